"""Tests for the Ollama client, prompt generation and the commentary consumer."""

import random

import pytest
from aiohttp import web
from aiohttp import test_utils

from btspeaker.lib.errors import CommentaryError
from btspeaker.lib.models import (DeviceConnected, PlaybackState, PlaybackStateChanged,
                                  TrackChanged, TrackMetadata)
from btspeaker.outputs.commentary import (FALLBACK_PHRASES, SYSTEM_PROMPT, CommentaryGenerator,
                                          CommentaryService, OllamaClient, clean_response)

SONG = TrackMetadata("Nickelback", "Photograph", "All the Right Reasons", genre="Rock",
                     duration=259_000_000)


@pytest.fixture
async def ollama():
    """A fake Ollama server; tweak ``state`` to change its answers."""
    state = {"models": ["phi3:mini"], "reply": "Wow. Bold choice.", "status": 200,
             "raw": None, "pulls": [], "chats": []}

    async def tags(request):
        return web.json_response({"models": [{"name": m} for m in state["models"]]})

    async def pull(request):
        body = await request.json()
        state["pulls"].append(body["name"])
        state["models"].append(body["name"])
        return web.json_response({"status": "success"})

    async def chat(request):
        state["chats"].append(await request.json())
        if state["status"] != 200:
            return web.Response(status=state["status"])
        if state["raw"] is not None:
            return web.Response(text=state["raw"], content_type="application/json")
        return web.json_response({"message": {"role": "assistant", "content": state["reply"]}})

    app = web.Application()
    app.router.add_get("/api/tags", tags)
    app.router.add_post("/api/pull", pull)
    app.router.add_post("/api/chat", chat)
    server = test_utils.TestServer(app)
    await server.start_server()
    client = OllamaClient(str(server.make_url("/")), "phi3:mini", timeout=5)
    yield client, state
    await client.close()
    await server.close()


def test_clean_response():
    assert clean_response('"Nice try."') == "Nice try."
    rambling = "First sentence here. " + "And then it keeps going " * 20
    assert clean_response(rambling) == "First sentence here."
    assert clean_response("Short and sweet. Two sentences.") == "Short and sweet. Two sentences."


class TestOllamaClient:

    async def test_chat_sends_persona_and_options(self, ollama):
        client, state = ollama
        assert await client.chat("Roast this") == "Wow. Bold choice."
        body = state["chats"][0]
        assert body["model"] == "phi3:mini"
        assert body["stream"] is False
        assert body["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert body["messages"][1] == {"role": "user", "content": "Roast this"}
        assert body["options"]["temperature"] == 0.8
        assert body["options"]["top_p"] == 0.9

    async def test_chat_errors(self, ollama):
        client, state = ollama
        state["status"] = 500
        with pytest.raises(CommentaryError):
            await client.chat("hi")
        state["status"] = 200
        state["reply"] = "   "
        with pytest.raises(CommentaryError):
            await client.chat("hi")

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '{"message": "hi"}',
                                     '{"message": {"content": 42}}'])
    async def test_malformed_reply_is_a_commentary_error(self, ollama, raw):
        client, state = ollama
        state["raw"] = raw
        with pytest.raises(CommentaryError):
            await client.chat("hi")

    async def test_available_and_model_pull(self, ollama):
        client, state = ollama
        assert await client.available()
        assert await client.ensure_model()
        assert state["pulls"] == []

        state["models"] = ["llama3:8b"]
        assert await client.ensure_model()
        assert state["pulls"] == ["phi3:mini"]

    async def test_unreachable_server(self):
        client = OllamaClient("http://127.0.0.1:9", timeout=1)
        assert not await client.available()
        with pytest.raises(CommentaryError):
            await client.chat("anyone?")
        await client.close()


class TestGenerator:

    async def test_track_change_prompt_has_context(self, ollama):
        client, state = ollama
        generator = CommentaryGenerator(client, device_name="Kitchen")
        previous = TrackMetadata("Creed", "Higher")
        await generator.track_comment(SONG, previous, PlaybackState.PLAYING)

        prompt = state["chats"][0]["messages"][1]["content"]
        assert "from 'Creed - Higher' to 'Nickelback - Photograph'" in prompt
        assert "Album: All the Right Reasons" in prompt
        assert "Genre: Rock" in prompt
        assert "Duration: 4:19" in prompt
        assert "Device: Kitchen" in prompt
        assert "Playback state: playing" in prompt

    async def test_backend_failure_uses_fallback(self, ollama):
        client, state = ollama
        state["status"] = 503
        generator = CommentaryGenerator(client, rng=random.Random(1))
        assert await generator.track_comment(SONG) in FALLBACK_PHRASES

    async def test_garbled_reply_uses_fallback(self, ollama):
        client, state = ollama
        state["raw"] = "{not json"
        generator = CommentaryGenerator(client, rng=random.Random(2))
        assert await generator.welcome("Phone") in FALLBACK_PHRASES

    async def test_no_client_uses_fallback(self):
        generator = CommentaryGenerator(None)
        assert await generator.welcome("Phone") in FALLBACK_PHRASES


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCommentaryService:

    def _service(self, said, clock):
        return CommentaryService(CommentaryGenerator(None, rng=random.Random(0)), said.append,
                                 throttle=10, clock=clock)

    async def test_throttles_comments(self):
        said, clock = [], FakeClock()
        service = self._service(said, clock)

        await service.handle(TrackChanged("AA", SONG, None))
        clock.now = 5
        await service.handle(TrackChanged("AA", TrackMetadata("X", "Y"), SONG))
        assert len(said) == 1
        assert service.throttled == 1

        clock.now = 11
        await service.handle(TrackChanged("AA", TrackMetadata("X", "Z"), SONG))
        assert len(said) == 2

    async def test_which_events_get_comments(self):
        said, clock = [], FakeClock()
        service = self._service(said, clock)

        def step():
            clock.now += 60

        await service.handle(DeviceConnected("AA", "Phone"))
        step()
        await service.handle(PlaybackStateChanged("AA", PlaybackState.PLAYING,
                                                  PlaybackState.PAUSED, SONG))
        step()
        await service.handle(PlaybackStateChanged("AA", PlaybackState.PAUSED,
                                                  PlaybackState.PLAYING, SONG))
        step()
        await service.handle(PlaybackStateChanged("AA", PlaybackState.STOPPED,
                                                  PlaybackState.PAUSED, SONG))
        step()
        await service.handle(PlaybackStateChanged("AA", PlaybackState.PLAYING,
                                                  PlaybackState.STOPPED, None))
        assert len(said) == 5

        step()
        await service.handle(PlaybackStateChanged("AA", PlaybackState.STOPPED,
                                                  PlaybackState.UNKNOWN, None))
        step()
        await service.handle(PlaybackStateChanged("AA", PlaybackState.SEEKING_FORWARD,
                                                  PlaybackState.PLAYING, SONG))
        assert len(said) == 5
