"""
Narration: speak step instructions with on-device TTS, falling back to network audio.

HOW THIS SCRIPT WORKS (for studying)

  Narrator.speak(text) is fire-and-forget. It returns the asyncio task that
  plays the utterance, so callers may await it, but nobody has to.

  1. Nothing plays until enable() has been called from a user gesture
     (browsers block autoplay; the Streamlit view has an "Enable voice" button).
  2. Starting an utterance cancels the one in flight: its task is cancelled,
     the engine is asked to stop, and its completion can no longer touch state
     (each utterance carries a token; only the current token may finish).
     The engine only ever runs on one narration worker thread, so a new
     utterance waits there until the stopped one has let go of the engine.
  3. The on-device synthesizer (pyttsx3) speaks with a voice whose language
     matches `lang` ("en"), else the first voice it has.
  4. If there is no synthesizer, no voice, or the engine raises, the text
     goes to NetworkAudioFallback: a Google Translate TTS clip fetched with
     requests. The clip reaches the audio sink (st.audio in the front-end)
     only if its utterance is still the current one; cancelling also flushes
     clips the sink has queued but not played.
  5. Fallback failures are logged and dropped. Narration never blocks or
     fails the task player.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Protocol
from urllib.parse import urlencode

import requests

from careguide.constants import (
    FALLBACK_TTS_TIMEOUT,
    FALLBACK_TTS_URL,
    SPEECH_RATE,
    SPEECH_VOLUME,
    VOICE_LANG,
)
from careguide.logger import log_event


class SynthesisError(RuntimeError):
    """The speech engine could not speak. Narration falls back to network audio."""


@dataclass(frozen=True)
class Voice:
    id: str
    lang: str


class Synthesizer(Protocol):
    def voices(self) -> list[Voice]: ...
    def say(self, text: str, voice_id: str, rate: float, volume: float) -> None: ...
    def stop(self) -> None: ...


def _voice_lang(v: Any) -> str:
    langs = getattr(v, "languages", None) or []
    for lang in langs:
        if isinstance(lang, bytes):
            lang = lang.decode("utf-8", errors="ignore")
        lang = str(lang).strip("\x05\x00 ")
        if lang:
            return lang
    return getattr(v, "id", "") or ""


class Pyttsx3Synthesizer:
    """
    On-device speech via pyttsx3. say() blocks until the utterance ends.

    stop() may be called from any thread: it only raises a flag, and the
    engine stops itself at the next word boundary from inside its own run loop.
    """

    # what the pyttsx3 drivers raise when the audio backend misbehaves
    DRIVER_ERRORS = (RuntimeError, OSError, ValueError, AttributeError)

    def __init__(self, engine: Any = None):
        if engine is None:
            try:
                import pyttsx3
                engine = pyttsx3.init()
            except (ImportError, RuntimeError, OSError) as exc:
                raise SynthesisError(f"pyttsx3 unavailable: {exc}") from exc
        self.engine = engine
        self._stop = threading.Event()
        self.engine.connect("started-word", self._on_word)
        self.base_rate = int(self.engine.getProperty("rate") or 200)

    def _on_word(self, name, location, length) -> None:
        if self._stop.is_set():
            self.engine.stop()

    def voices(self) -> list[Voice]:
        try:
            return [
                Voice(id=v.id, lang=_voice_lang(v))
                for v in (self.engine.getProperty("voices") or [])
            ]
        except self.DRIVER_ERRORS as exc:
            raise SynthesisError(f"could not list voices: {exc}") from exc

    def say(self, text: str, voice_id: str, rate: float, volume: float) -> None:
        self._stop.clear()
        try:
            self.engine.setProperty("voice", voice_id)
            self.engine.setProperty("rate", int(self.base_rate * rate))
            self.engine.setProperty("volume", max(0.0, min(1.0, volume)))
            self.engine.say(text)
            self.engine.runAndWait()
        except self.DRIVER_ERRORS as exc:
            raise SynthesisError(f"{type(exc).__name__}: {exc}") from exc

    def stop(self) -> None:
        self._stop.set()


def fallback_tts_url(text: str, lang: str = VOICE_LANG) -> str:
    query = urlencode({"ie": "UTF-8", "client": "tw-ob", "tl": lang, "q": text})
    return f"{FALLBACK_TTS_URL}?{query}"


class NetworkAudioFallback:
    """Fetch a TTS clip over HTTP; the MP3 bytes go to a sink, flush() empties it."""

    def __init__(
        self,
        sink: Callable[[bytes], None],
        lang: str = VOICE_LANG,
        timeout: float = FALLBACK_TTS_TIMEOUT,
        http: Any = None,
        flush: Callable[[], None] | None = None,
    ):
        self.sink = sink
        self.lang = lang
        self.timeout = timeout
        self.http = http or requests
        self._flush = flush

    def fetch(self, text: str) -> bytes:
        resp = self.http.get(fallback_tts_url(text, self.lang), timeout=self.timeout)
        resp.raise_for_status()
        return resp.content

    def flush(self) -> None:
        if self._flush is not None:
            self._flush()


def pick_voice(voices: list[Voice], lang: str = VOICE_LANG) -> Voice | None:
    """Locale-matched voice, else the first one, else None."""
    if not voices:
        return None
    wanted = lang.lower()
    for v in voices:
        if wanted in v.lang.lower():
            return v
    return voices[0]


class Narrator:
    def __init__(
        self,
        synthesizer: Synthesizer | None = None,
        fallback: NetworkAudioFallback | None = None,
        lang: str = VOICE_LANG,
        rate: float = SPEECH_RATE,
        volume: float = SPEECH_VOLUME,
    ):
        self.synthesizer = synthesizer
        self.fallback = fallback
        self.lang = lang
        self.rate = rate
        self.volume = volume
        self.enabled = False
        self._closed = False
        self._playing = False
        self._on_engine = False
        self._token: object | None = None
        self._task: asyncio.Task | None = None
        # every synthesizer call runs here, one at a time
        self._worker: ThreadPoolExecutor | None = None
        self.used_fallback = False

    @property
    def playing(self) -> bool:
        return self._playing

    def enable(self) -> None:
        """Call from a user gesture. Until then speak() is a no-op."""
        if not self._closed:
            self.enabled = True

    def speak(self, text: str) -> asyncio.Task | None:
        """Start speaking text, cancelling anything in flight. Needs a running loop."""
        if not self.enabled or not text:
            return None
        self.cancel()
        token = object()
        self._token = token
        self._task = asyncio.get_running_loop().create_task(self._run(token, text))
        return self._task

    def cancel(self) -> None:
        """Stop the current utterance; its completion callback will not run."""
        on_engine = self._on_engine
        self._token = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        if on_engine and self.synthesizer is not None:
            self.synthesizer.stop()
        if self.fallback is not None:
            self.fallback.flush()
        self._on_engine = False
        self._playing = False

    def close(self) -> None:
        """Cancel and stop for good. Later speak() calls do nothing."""
        self.cancel()
        self.enabled = False
        self._closed = True
        if self._worker is not None:
            self._worker.shutdown(wait=False, cancel_futures=True)
            self._worker = None

    def _current(self, token: object) -> bool:
        return token is self._token

    async def _on_worker(self, fn: Callable, *args):
        if self._worker is None:
            self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="narration")
        return await asyncio.get_running_loop().run_in_executor(self._worker, fn, *args)

    def _say_if_current(self, token: object, text: str, voice_id: str) -> None:
        # queued behind a stopped utterance and cancelled before the worker got to it
        if not self._current(token):
            return
        self.synthesizer.say(text, voice_id, self.rate, self.volume)

    async def _run(self, token: object, text: str) -> None:
        try:
            voice = None
            if self.synthesizer is not None:
                try:
                    voice = pick_voice(await self._on_worker(self.synthesizer.voices), self.lang)
                except SynthesisError as exc:
                    log_event("SYNTHESIS_FAILURE", {"detail": str(exc)})
            if voice is None:
                await self._fallback(token, text)
                return

            if not self._current(token):
                return
            self._playing = True
            self._on_engine = True
            try:
                await self._on_worker(self._say_if_current, token, text, voice.id)
            except SynthesisError as exc:
                log_event("SYNTHESIS_FAILURE", {"detail": str(exc)})
                if self._current(token):
                    self._on_engine = False
                    await self._fallback(token, text)
        finally:
            if self._current(token):
                self._playing = False
                self._on_engine = False
                self._token = None

    async def _fallback(self, token: object, text: str) -> None:
        if self.fallback is None or not self._current(token):
            return
        self.used_fallback = True
        self._playing = True
        try:
            clip = await asyncio.to_thread(self.fallback.fetch, text)
        except requests.RequestException as exc:
            log_event("NARRATION_FALLBACK_FAILURE", {"detail": str(exc)})
            return
        if self._current(token):
            self.fallback.sink(clip)
