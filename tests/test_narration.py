import asyncio
import threading
import time
from types import SimpleNamespace

import pytest
import requests

from careguide.logger import read_events
from careguide.narration import (
    NetworkAudioFallback,
    Narrator,
    Pyttsx3Synthesizer,
    SynthesisError,
    Voice,
    fallback_tts_url,
    pick_voice,
)


class FakeSynth:
    """say() blocks until stop() or `duration` seconds, like a real engine."""

    def __init__(self, voices=None, duration=1.0, error=None, voices_error=None):
        self._voices = voices if voices is not None else [
            Voice("v-de", "de_DE"), Voice("v-en", "en_US"),
        ]
        self.duration = duration
        self.error = error
        self.voices_error = voices_error
        self.said = []
        self.voice_ids = []
        self.stops = 0
        self.inside = 0
        self.max_inside = 0
        self._stop = threading.Event()

    def voices(self):
        if self.voices_error:
            raise self.voices_error
        return self._voices

    def say(self, text, voice_id, rate, volume):
        if self.error:
            raise self.error
        self.inside += 1
        self.max_inside = max(self.max_inside, self.inside)
        self.said.append(text)
        self.voice_ids.append(voice_id)
        self._stop.clear()
        self._stop.wait(self.duration)
        self.inside -= 1

    def stop(self):
        self.stops += 1
        self._stop.set()


class FakeHttp:
    """Answers every request with `content`, or with the q= text when content is None."""

    def __init__(self, content=b"mp3-bytes", error=None, delay=0.0):
        self.content = content
        self.error = error
        self.delay = delay
        self.urls = []

    def get(self, url, timeout):
        self.urls.append(url)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        content = self.content
        if content is None:
            content = url.rsplit("q=", 1)[1].encode()
        return SimpleNamespace(content=content, raise_for_status=lambda: None)


class FakeEngine:
    """Just enough of a pyttsx3 engine; runAndWait fires one started-word per word."""

    def __init__(self, voices=None, voices_error=None, run_error=None):
        self._voices = voices or [SimpleNamespace(id="v1", languages=[b"\x05en_US"])]
        self.voices_error = voices_error
        self.run_error = run_error
        self.props = {"rate": 200}
        self.callbacks = {}
        self.queued = []
        self.spoken = []
        self.stops = 0
        self.after_word = None

    def connect(self, topic, cb):
        self.callbacks[topic] = cb

    def getProperty(self, name):
        if name == "voices":
            if self.voices_error:
                raise self.voices_error
            return self._voices
        return self.props.get(name)

    def setProperty(self, name, value):
        self.props[name] = value

    def say(self, text):
        self.queued.append(text)

    def runAndWait(self):
        if self.run_error:
            raise self.run_error
        for text in self.queued:
            for word in text.split():
                self.callbacks["started-word"]("utterance", 0, len(word))
                if self.stops:
                    break
                self.spoken.append(word)
                if self.after_word:
                    self.after_word(word)
        self.queued = []

    def stop(self):
        self.stops += 1


def test_pick_voice():
    voices = [Voice("a", "fr_FR"), Voice("b", "en_GB")]
    assert pick_voice(voices).id == "b"
    assert pick_voice([Voice("a", "fr_FR")]).id == "a"
    assert pick_voice([]) is None


def test_fallback_url():
    url = fallback_tts_url("Brush your teeth")
    assert url.startswith("https://translate.google.com/translate_tts?")
    assert "client=tw-ob" in url
    assert "tl=en" in url
    assert "q=Brush+your+teeth" in url


def test_silent_until_enabled():
    synth = FakeSynth()

    async def run():
        narrator = Narrator(synth)
        assert narrator.speak("hello") is None
        narrator.enable()
        task = narrator.speak("hello")
        synth.duration = 0.01
        await task

    asyncio.run(run())
    assert synth.said == ["hello"]
    assert synth.voice_ids == ["v-en"]


def test_new_utterance_cancels_the_previous_one():
    synth = FakeSynth(duration=1.0)

    async def run():
        narrator = Narrator(synth)
        narrator.enable()
        narrator.speak("one")
        await asyncio.sleep(0.05)
        assert narrator.playing
        second = narrator.speak("two")
        await asyncio.sleep(0.05)
        assert narrator.playing
        narrator.cancel()
        await asyncio.sleep(0)
        assert second.cancelled() or second.done()
        assert not narrator.playing

    asyncio.run(run())
    assert synth.said == ["one", "two"]
    assert synth.stops == 2


def test_synthesis_error_falls_back_to_network_audio():
    clips = []
    synth = FakeSynth(error=SynthesisError("no audio device"))
    http = FakeHttp()

    async def run():
        narrator = Narrator(synth, NetworkAudioFallback(clips.append, http=http))
        narrator.enable()
        await narrator.speak("Rinse your mouth")
        assert narrator.used_fallback
        assert not narrator.playing

    asyncio.run(run())
    assert clips == [b"mp3-bytes"]
    assert "q=Rinse+your+mouth" in http.urls[0]
    assert [e["type"] for e in read_events()] == ["SYNTHESIS_FAILURE"]


def test_no_synthesizer_goes_straight_to_fallback():
    clips = []

    async def run():
        narrator = Narrator(None, NetworkAudioFallback(clips.append, http=FakeHttp(b"x")))
        narrator.enable()
        await narrator.speak("hi")

    asyncio.run(run())
    assert clips == [b"x"]


def test_fallback_failure_is_logged_not_raised():
    http = FakeHttp(error=requests.ConnectionError("offline"))

    async def run():
        narrator = Narrator(None, NetworkAudioFallback(lambda clip: None, http=http))
        narrator.enable()
        await narrator.speak("hi")

    asyncio.run(run())
    events = read_events()
    assert events[-1]["type"] == "NARRATION_FALLBACK_FAILURE"
    assert "offline" in events[-1]["detail"]


def test_superseded_network_clip_never_reaches_the_sink():
    clips = []
    http = FakeHttp(content=None, delay=0.3)

    async def run():
        narrator = Narrator(None, NetworkAudioFallback(clips.append, http=http))
        narrator.enable()
        narrator.speak("one")
        await asyncio.sleep(0.05)
        assert narrator.playing
        await narrator.speak("two")
        await asyncio.sleep(0.35)
        assert not narrator.playing

    asyncio.run(run())
    assert clips == [b"two"]


def test_cancel_flushes_queued_clips():
    flushed = []

    async def run():
        fallback = NetworkAudioFallback(
            lambda clip: None, http=FakeHttp(), flush=lambda: flushed.append(1),
        )
        narrator = Narrator(None, fallback)
        narrator.enable()
        await narrator.speak("one")
        narrator.cancel()

    asyncio.run(run())
    # once when "one" started, once on cancel
    assert len(flushed) == 2


def test_voice_listing_failure_falls_back():
    clips = []
    synth = FakeSynth(voices_error=SynthesisError("driver gone"))

    async def run():
        narrator = Narrator(synth, NetworkAudioFallback(clips.append, http=FakeHttp()))
        narrator.enable()
        await narrator.speak("Rinse your mouth")

    asyncio.run(run())
    assert clips == [b"mp3-bytes"]
    assert synth.said == []
    assert [e["type"] for e in read_events()] == ["SYNTHESIS_FAILURE"]


def test_utterances_never_share_the_engine():
    synth = FakeSynth(duration=1.0)

    async def run():
        narrator = Narrator(synth)
        narrator.enable()
        narrator.speak("one")
        await asyncio.sleep(0.05)
        narrator.speak("two")
        await asyncio.sleep(0.05)
        narrator.speak("three")
        await asyncio.sleep(0.05)
        narrator.close()
        assert narrator.speak("four") is None

    asyncio.run(run())
    assert synth.max_inside == 1
    assert synth.said == ["one", "two", "three"]


def test_pyttsx3_driver_errors_become_synthesis_errors():
    synth = Pyttsx3Synthesizer(FakeEngine(voices_error=OSError("no audio device")))
    with pytest.raises(SynthesisError, match="no audio device"):
        synth.voices()

    synth = Pyttsx3Synthesizer(FakeEngine(run_error=OSError("device busy")))
    assert [v.lang for v in synth.voices()] == ["en_US"]
    with pytest.raises(SynthesisError, match="OSError: device busy"):
        synth.say("hi", "v1", 0.9, 1.0)


def test_pyttsx3_stop_takes_effect_at_the_next_word():
    engine = FakeEngine()
    synth = Pyttsx3Synthesizer(engine)
    engine.after_word = lambda word: synth.stop()
    synth.say("brush the top teeth", "v1", 0.9, 0.5)
    assert engine.spoken == ["brush"]
    assert engine.stops == 1
    assert engine.props["rate"] == 180
    assert engine.props["volume"] == 0.5

    engine.after_word = None
    engine.stops = 0
    synth.say("rinse", "v1", 0.9, 1.0)
    assert engine.spoken == ["brush", "rinse"]
