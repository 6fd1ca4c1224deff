# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Speech engines: render a line of text out of the speaker.

Every engine raises SpeechError when it can't speak; the OutputArbiter then
retries once on the fallback engine.  The factory ``create_speech_engine``
maps config names to engines:

  - ``piper``   – piper → wav in /dev/shm → aplay (default)
  - ``espeak``  – espeak-ng, or espeak
  - ``edge``    – edge-tts → mp3 → mpv (needs the edge-tts package + network)
  - ``none``    – log only (--no-speech)
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod

from ..lib.errors import SpeechError
from ..lib.shell import have_binary, run_checked

try:
    import edge_tts
    HAS_EDGE_TTS = True
except ImportError:
    HAS_EDGE_TTS = False

log = logging.getLogger(__name__)

RAM_DIR = "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()
DEFAULT_PIPER_VOICE = "en_US-lessac-medium"
DEFAULT_ESPEAK_VOICE = "en+f3"
DEFAULT_EDGE_VOICE = "en-US-AndrewNeural"


def clean_text(text: str) -> str:
    """Strip quotes and collapse whitespace so nothing trips the renderers."""
    for ch in "\"'`“”‘’":
        text = text.replace(ch, "")
    return " ".join(text.split())


class SpeechEngine(ABC):
    name: str = ""

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Render *text*. Raises SpeechError on failure."""

    def available(self) -> bool:
        return True


class PiperEngine(SpeechEngine):
    name = "piper"

    def __init__(self, voice: str | None = None, model_dir: str | None = None,
                 timeout: float = 60.0):
        self.voice = voice if voice and "_" in voice else DEFAULT_PIPER_VOICE
        self.model_dir = model_dir or os.path.expanduser("~/.local/share/piper/voices")
        self.timeout = timeout
        self.wav = os.path.join(RAM_DIR, "btspeaker-speech.wav")

    @property
    def model_path(self) -> str | None:
        path = os.path.join(self.model_dir, f"{self.voice}.onnx")
        return path if os.path.exists(path) else None

    def available(self) -> bool:
        return have_binary("piper") and have_binary("aplay")

    async def speak(self, text: str) -> None:
        cmd = ["piper", "--output_file", self.wav]
        if self.model_path:
            cmd += ["--model", self.model_path]
        try:
            await run_checked(*cmd, stdin=clean_text(text), timeout=self.timeout)
            await run_checked("aplay", "-q", self.wav, timeout=self.timeout)
        except OSError as e:
            raise SpeechError(f"piper: {e}") from e
        finally:
            try:
                os.remove(self.wav)
            except FileNotFoundError:
                pass


class EspeakEngine(SpeechEngine):
    name = "espeak"

    def __init__(self, voice: str | None = None, speed: int = 160, amplitude: int = 200,
                 timeout: float = 30.0):
        self.voice = voice if voice and "_" not in voice else DEFAULT_ESPEAK_VOICE
        self.speed = speed
        self.amplitude = amplitude
        self.timeout = timeout
        self.binary = "espeak-ng" if have_binary("espeak-ng") else "espeak"

    def available(self) -> bool:
        return have_binary(self.binary)

    async def speak(self, text: str) -> None:
        try:
            await run_checked(self.binary, "-v", self.voice, "-s", str(self.speed),
                              "-a", str(self.amplitude), clean_text(text),
                              timeout=self.timeout)
        except OSError as e:
            raise SpeechError(f"{self.binary}: {e}") from e


class EdgeTTSEngine(SpeechEngine):
    name = "edge"

    def __init__(self, voice: str | None = None, volume: int = 80, timeout: float = 60.0):
        self.voice = voice if voice and "Neural" in voice else DEFAULT_EDGE_VOICE
        self.volume = volume
        self.timeout = timeout
        self.mp3 = os.path.join(RAM_DIR, "btspeaker-speech.mp3")

    def available(self) -> bool:
        return HAS_EDGE_TTS and have_binary("mpv")

    async def speak(self, text: str) -> None:
        if not HAS_EDGE_TTS:
            raise SpeechError("edge-tts not installed")
        try:
            communicate = edge_tts.Communicate(clean_text(text), voice=self.voice)
            await communicate.save(self.mp3)
            await run_checked("mpv", "--no-video", "--no-terminal",
                              f"--volume={self.volume}", self.mp3, timeout=self.timeout)
        except Exception as e:
            raise SpeechError(f"edge-tts: {e}") from e
        finally:
            try:
                os.remove(self.mp3)
            except FileNotFoundError:
                pass


class NullEngine(SpeechEngine):
    name = "none"

    def __init__(self):
        self.spoken: list[str] = []

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        log.info("🗣 %s", text)


def create_speech_engine(name: str | None, voice: str | None = None) -> SpeechEngine:
    """Engine for a config name; unknown names fall back to espeak."""
    name = (name or "none").lower()
    if name == "piper":
        return PiperEngine(voice)
    if name == "espeak":
        return EspeakEngine(voice)
    if name == "edge":
        if not HAS_EDGE_TTS:
            log.warning("edge-tts not installed, using espeak")
            return EspeakEngine(voice)
        return EdgeTTSEngine(voice)
    if name == "none":
        return NullEngine()
    log.warning("Unknown speech engine '%s', using espeak", name)
    return EspeakEngine(voice)
