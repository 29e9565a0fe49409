"""Ranked voice-preference policy.

Voices are matched by case-insensitive name fragment against an ordered
preference list.  Earlier preferences win; voices matching nothing keep
their original order after every matched voice.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional, Sequence


@dataclass(frozen=True)
class Voice:
    voice_id: str
    name: str
    language: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


class VoicePreferencePolicy:
    def __init__(self, preferences: Sequence[str]) -> None:
        self._preferences = [p.casefold() for p in preferences if p.strip()]

    def score(self, voice: Voice) -> int:
        """Index of the first matching preference; len(preferences) when none match."""
        name = voice.name.casefold()
        for rank, fragment in enumerate(self._preferences):
            if fragment in name:
                return rank
        return len(self._preferences)

    def rank(self, voices: Sequence[Voice]) -> list[Voice]:
        # sorted() is stable, so ties keep provider order
        return sorted(voices, key=self.score)

    def choose(self, voices: Sequence[Voice]) -> Optional[Voice]:
        ranked = self.rank(voices)
        return ranked[0] if ranked else None
