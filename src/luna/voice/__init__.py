"""
voice/ — Luna speech adapters

Component overview:
    SpeechCaptureAdapter  Recognizer backend → transcript / utterance events
    SpeechOutputAdapter   Synthesizer backend → output lifecycle events
    VoiceCatalog          Published list of voices, with subscribers
    WhisperRecognizer     faster-whisper + webrtcvad microphone backend
    PiperSynthesizer      Piper TTS + sounddevice playback backend

Adapters never call the controller; every outcome is a typed event from
voice.events pushed through the ``emit`` callable they were given.
"""

from luna.voice.capture import SpeechCaptureAdapter
from luna.voice.catalog import VoiceCatalog, VoiceOption
from luna.voice.output import SpeechOutputAdapter

__all__ = [
    "SpeechCaptureAdapter",
    "SpeechOutputAdapter",
    "VoiceCatalog",
    "VoiceOption",
]
