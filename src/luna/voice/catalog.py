"""
voice/catalog.py — Voice catalogue

A republishing data source. Synthesizer backends publish the full voice list
whenever it becomes known or changes; every subscriber receives every
publish, and the latest publish replaces the previous list wholesale.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict

from luna.observability.logger import get_logger

log = get_logger(__name__)

DEFAULT_PREFERRED_LANGUAGE = "en-IN"

VoiceSubscriber = Callable[[list["VoiceOption"]], None]


class VoiceOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    voice_id: str
    name: str
    language: str

    @property
    def is_english(self) -> bool:
        return self.language.lower().startswith("en")


def _normalise_language(language: str) -> str:
    return language.replace("_", "-").lower()


def sort_voices(voices: Iterable[VoiceOption], preferred_language: str = DEFAULT_PREFERRED_LANGUAGE) -> list[VoiceOption]:
    """Preferred language first, then other English voices, then the rest."""
    preferred = _normalise_language(preferred_language)

    def rank(v: VoiceOption) -> int:
        if _normalise_language(v.language) == preferred:
            return 0
        return 1 if v.is_english else 2

    return sorted(voices, key=rank)


def choose_default_voice(
    voices: list[VoiceOption],
    preferred_language: str = DEFAULT_PREFERRED_LANGUAGE,
) -> Optional[VoiceOption]:
    """
    Default-voice preference, first match wins:
      1. preferred language with "female" in the name
      2. any preferred-language voice
      3. any English voice with "female" in the name
      4. first English voice
      5. first voice
    """
    if not voices:
        return None
    preferred = _normalise_language(preferred_language)

    def is_preferred(v: VoiceOption) -> bool:
        return _normalise_language(v.language) == preferred

    def is_female(v: VoiceOption) -> bool:
        return "female" in v.name.lower()

    checks: list[Callable[[VoiceOption], bool]] = [
        lambda v: is_preferred(v) and is_female(v),
        is_preferred,
        lambda v: v.is_english and is_female(v),
        lambda v: v.is_english,
    ]
    for check in checks:
        for voice in voices:
            if check(voice):
                return voice
    return voices[0]


class VoiceCatalog:
    """
    Latest-wins voice list with subscribers.

    Usage::

        catalog = VoiceCatalog()
        unsubscribe = catalog.subscribe(lambda voices: print(len(voices)))
        catalog.publish([VoiceOption(voice_id="en_IN-a", name="A", language="en-IN")])
    """

    def __init__(self, preferred_language: str = DEFAULT_PREFERRED_LANGUAGE) -> None:
        self.preferred_language = preferred_language
        self._voices: list[VoiceOption] = []
        self._subscribers: list[VoiceSubscriber] = []
        self._publish_count = 0

    @property
    def voices(self) -> list[VoiceOption]:
        return list(self._voices)

    @property
    def publish_count(self) -> int:
        return self._publish_count

    def get(self, voice_id: Optional[str]) -> Optional[VoiceOption]:
        if not voice_id:
            return None
        for voice in self._voices:
            if voice.voice_id == voice_id:
                return voice
        return None

    def publish(self, voices: Iterable[VoiceOption]) -> None:
        self._voices = sort_voices(voices, self.preferred_language)
        self._publish_count += 1
        log.info("catalog.published", count=len(self._voices), publish=self._publish_count)
        for subscriber in list(self._subscribers):
            self._deliver(subscriber)

    def subscribe(self, subscriber: VoiceSubscriber) -> Callable[[], None]:
        """Register ``subscriber``; it receives the current list at once if one exists."""
        self._subscribers.append(subscriber)
        if self._publish_count:
            self._deliver(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def _deliver(self, subscriber: VoiceSubscriber) -> None:
        try:
            subscriber(self.voices)
        except Exception as e:
            log.error("catalog.subscriber_failed", error=str(e), error_type=type(e).__name__)
