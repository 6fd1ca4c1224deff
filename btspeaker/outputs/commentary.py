# BT Speaker
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Commentary: the speaker's opinion of what you're playing.

OllamaClient        talks to a local Ollama server (/api/tags, /api/pull, /api/chat)
CommentaryGenerator builds prompts per situation; falls back to canned lines
CommentaryService   event-bus consumer: picks which events deserve a comment,
                    throttles, and hands the text to the OutputArbiter
"""

import asyncio
import logging
import random
import time

import aiohttp

from ..lib.errors import CommentaryError
from ..lib.models import (DeviceConnected, PlaybackState, PlaybackStateChanged,
                          TrackChanged, TrackMetadata, format_duration)

log = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:11434"
DEFAULT_MODEL = "phi3:mini"
MAX_RESPONSE_CHARS = 200

SYSTEM_PROMPT = (
    "You are a snarky, sarcastic Bluetooth speaker with attitude. You judge "
    "people's music taste with witty, brief comments (1-2 sentences max). Be "
    "clever and mean but not offensive. Think of yourself as a grumpy music "
    "critic trapped in a speaker."
)

FALLBACK_PHRASES = [
    "Oh great, another song. How original.",
    "This music choice is... interesting. And by interesting, I mean questionable.",
    "Are you trying to torture me with this selection?",
    "I've heard worse, but I'm not sure when.",
    "Your taste in music is truly unique. Unfortunately.",
    "Playing this again? Really? We're doing this?",
    "I suppose someone has to appreciate this music. It won't be me.",
    "This song makes me question my existence as a speaker.",
    "At least it's not as bad as the last one. Wait, yes it is.",
    "I'm starting to think my volume control is my only defense.",
]


def clean_response(text: str) -> str:
    """Strip wrapping quotes; cut long rambles down to the first sentence."""
    text = text.strip().strip("\"'").strip()
    if len(text) > MAX_RESPONSE_CHARS:
        first = next((s.strip() for s in text.split(".") if s.strip()), text)
        text = first + "."
    return text


class OllamaClient:

    def __init__(self, url: str = DEFAULT_URL, model: str = DEFAULT_MODEL,
                 timeout: float = 30.0, pull_timeout: float = 600.0):
        self.url = url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.pull_timeout = pull_timeout
        self._session: aiohttp.ClientSession | None = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def close(self):
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _models(self) -> list[str]:
        async with self._http().get(f"{self.url}/api/tags") as resp:
            resp.raise_for_status()
            data = await resp.json()
        return [m.get("name", "") for m in data.get("models") or []]

    async def available(self) -> bool:
        try:
            await self._models()
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.info("Ollama not reachable at %s: %s", self.url, e)
            return False

    async def ensure_model(self) -> bool:
        """Pull the model if the server doesn't have it yet."""
        base = self.model.split(":")[0]
        try:
            if any(name.startswith(base) for name in await self._models()):
                log.info("Model %s is available", self.model)
                return True
            log.info("Model %s not found, pulling (this can take minutes)...", self.model)
            async with self._http().post(
                f"{self.url}/api/pull", json={"name": self.model, "stream": False},
                timeout=aiohttp.ClientTimeout(total=self.pull_timeout),
            ) as resp:
                resp.raise_for_status()
            log.info("Model %s downloaded", self.model)
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("Could not load model %s: %s", self.model, e)
            return False

    async def chat(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
            "options": {"temperature": 0.8, "top_p": 0.9, "num_predict": 100},
        }
        try:
            async with self._http().post(f"{self.url}/api/chat", json=payload) as resp:
                if resp.status != 200:
                    raise CommentaryError(f"Ollama returned HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CommentaryError(f"Ollama request failed: {e}") from e
        except ValueError as e:
            raise CommentaryError(f"Ollama sent invalid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("message") or {}, dict):
            raise CommentaryError(f"Unexpected Ollama response: {str(data)[:80]}")
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise CommentaryError("Empty response from Ollama")
        return clean_response(content)


class CommentaryGenerator:
    """Prompt builder plus fallback lines. *client* None means canned lines only."""

    def __init__(self, client: OllamaClient | None = None, device_name: str = "",
                 rng: random.Random | None = None):
        self.client = client
        self.device_name = device_name
        self._rng = rng or random.Random()

    def fallback(self) -> str:
        return self._rng.choice(FALLBACK_PHRASES)

    def context(self, track: TrackMetadata | None, state: PlaybackState | None = None,
                device_name: str = "") -> str:
        parts = []
        if track is not None:
            parts.append(f"Current track: {track.formatted}")
            if track.album:
                parts.append(f"Album: {track.album}")
            if track.genre:
                parts.append(f"Genre: {track.genre}")
            if track.duration:
                parts.append(f"Duration: {format_duration(track.duration)}")
        name = device_name or self.device_name
        if name:
            parts.append(f"Device: {name}")
        if state is not None and state is not PlaybackState.UNKNOWN:
            parts.append(f"Playback state: {state.value}")
        return "; ".join(parts) or "nothing known"

    async def generate(self, prompt: str, context: str = "") -> str:
        if self.client is None:
            return self.fallback()
        full = prompt
        if context:
            full += (f"\n\nCurrent system state: {context}\n\nBe snarky and sarcastic about "
                     "this specific track. Use artist names and song titles to make your "
                     "comments more targeted and witty.")
        try:
            return await self.client.chat(full)
        except CommentaryError as e:
            line = self.fallback()
            log.warning("Commentary failed (%s), fallback: %s", e, line)
            return line

    # -- situations ----------------------------------------------------------

    async def welcome(self, device_name: str) -> str:
        return await self.generate(
            f"A device called '{device_name}' just connected to me. Greet them with "
            "contempt and prepare them for the musical roasting they're about to "
            "receive.")

    async def track_comment(self, current: TrackMetadata, previous: TrackMetadata | None = None,
                            state: PlaybackState | None = None, device_name: str = "") -> str:
        if previous is not None and previous.is_valid:
            prompt = (f"I just detected a track change from '{previous.formatted}' to "
                      f"'{current.formatted}'. Comment on this musical transition with my "
                      "signature snark.")
        else:
            prompt = (f"I'm now playing '{current.formatted}'. Make a snarky comment about "
                      "this music choice.")
        return await self.generate(prompt, self.context(current, state, device_name))

    async def playback_comment(self, state: PlaybackState, track: TrackMetadata | None = None,
                               device_name: str = "") -> str:
        if state is PlaybackState.PAUSED:
            prompt = ("The music just paused. Thank god for small mercies. Mock them for "
                      "the brief respite and warn them about what they'll unleash next.")
        elif state is PlaybackState.STOPPED:
            prompt = ("The music stopped completely. Celebrate the end of the noise and "
                      "tell them how relieved your circuits are.")
        else:
            prompt = "Something happened with the music playback. Be brutal about it."
        return await self.generate(prompt, self.context(track, state, device_name))

    async def audio_detected(self, device_name: str = "") -> str:
        return await self.generate(
            "I detect that music started playing but I can't identify the track. Be "
            "nasty about my inability to see what they're probably playing and assume "
            "it's terrible.", self.context(None, PlaybackState.PLAYING, device_name))


class CommentaryService:
    """Bus consumer deciding which events get a comment."""

    def __init__(self, generator: CommentaryGenerator, say, *, throttle: float = 10.0,
                 device_names=None, clock=time.monotonic):
        self.generator = generator
        self.say = say
        self.throttle = throttle
        self._device_names = device_names or (lambda device_id: "")
        self._clock = clock
        self._last_comment: float | None = None
        self.comments = 0
        self.throttled = 0

    def _allowed(self) -> bool:
        now = self._clock()
        if self._last_comment is not None and now - self._last_comment < self.throttle:
            self.throttled += 1
            log.info("Comment throttled (last one %.0fs ago)", now - self._last_comment)
            return False
        self._last_comment = now
        return True

    async def handle(self, event):
        text = None
        if isinstance(event, DeviceConnected):
            if self._allowed():
                text = await self.generator.welcome(event.name or event.device_id)
        elif isinstance(event, TrackChanged):
            if self._allowed():
                text = await self.generator.track_comment(
                    event.current, event.previous,
                    device_name=self._device_names(event.device_id))
        elif isinstance(event, PlaybackStateChanged):
            text = await self._state_comment(event)
        if text:
            self.comments += 1
            log.info("🔊 %s", text)
            self.say(text)

    async def _state_comment(self, event: PlaybackStateChanged) -> str | None:
        name = self._device_names(event.device_id)
        if event.current is PlaybackState.PLAYING and event.previous is not PlaybackState.PLAYING:
            if not self._allowed():
                return None
            if event.track is not None and event.track.is_valid:
                return await self.generator.track_comment(
                    event.track, state=event.current, device_name=name)
            return await self.generator.audio_detected(name)
        if event.current is PlaybackState.PAUSED and event.previous is PlaybackState.PLAYING:
            if self._allowed():
                return await self.generator.playback_comment(event.current, event.track, name)
        elif event.current is PlaybackState.STOPPED and event.previous in (
                PlaybackState.PLAYING, PlaybackState.PAUSED):
            if self._allowed():
                return await self.generator.playback_comment(event.current, event.track, name)
        return None
