"""
Speech Services Module

HTTP clients for the external speech and text services used by the
narration and subtitle processors:
- WhisperTranscriber: OpenAI-compatible transcription with segment timestamps
- NarrationScriptWriter: chat completion that rewrites a transcript as narration
- ElevenLabsSynthesizer: text-to-speech to an MP3 file

Usage:
    from media_tools.speech import WhisperTranscriber

    transcriber = WhisperTranscriber(api_key=os.environ["OPENAI_API_KEY"])
    segments = transcriber.transcribe("audio.wav")
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

import requests

from media_tools.constants import MIN_SPEECH_AUDIO_BYTES

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"


class SpeechServiceError(RuntimeError):
    """An external speech/text service call failed."""


class NoSpeechError(SpeechServiceError):
    """The audio contains nothing to transcribe."""


@dataclass
class TranscriptSegment:
    """A timed piece of speech, in seconds."""

    start: float
    end: float
    text: str


def _error_detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(payload, dict):
        error = payload.get("error") or payload.get("detail") or payload
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)
    return str(payload)[:300]


class WhisperTranscriber:
    """Transcribe audio files into timed segments."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        model: str = "whisper-1",
        timeout: float = 300,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ValueError("Transcription API key is not configured")
        self.api_key = api_key
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def transcribe(self, audio_path: str, language: Optional[str] = None) -> List[TranscriptSegment]:
        """
        Transcribe an audio file.

        Args:
            audio_path: Local audio file (wav/mp3/m4a)
            language: ISO code, or None/"auto" to let the service detect it

        Returns:
            Non-empty segments ordered by start time

        Raises:
            NoSpeechError: The file is missing, implausibly small, or yields no segments
            SpeechServiceError: The service rejected the request
        """
        if not os.path.exists(audio_path):
            raise NoSpeechError(f"Audio file not found: {audio_path}")

        size = os.path.getsize(audio_path)
        if size < MIN_SPEECH_AUDIO_BYTES:
            raise NoSpeechError(f"Audio file too small to contain speech ({size} bytes)")

        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": "segment",
        }
        if language and language != "auto":
            data["language"] = language

        with open(audio_path, "rb") as audio_file:
            response = self.session.post(
                f"{self.base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                data=data,
                files={"file": (os.path.basename(audio_path), audio_file)},
                timeout=self.timeout,
            )

        if response.status_code >= 400:
            raise SpeechServiceError(f"Transcription failed: {response.status_code} - {_error_detail(response)}")

        payload = response.json()
        segments = []
        for item in payload.get("segments") or []:
            text = str(item.get("text", "")).strip()
            if not text:
                continue
            start = float(item.get("start", 0) or 0)
            end = float(item.get("end", start) or start)
            segments.append(TranscriptSegment(start=start, end=max(end, start), text=text))

        if not segments and str(payload.get("text", "")).strip():
            # Some compatible servers return only the full text
            duration = float(payload.get("duration", 0) or 0)
            segments.append(TranscriptSegment(0.0, duration, str(payload["text"]).strip()))

        if not segments:
            raise NoSpeechError("No speech detected in audio")

        segments.sort(key=lambda s: s.start)
        logger.info(f"[Speech] Transcribed {len(segments)} segments from {os.path.basename(audio_path)}")
        return segments


class NarrationScriptWriter:
    """Rewrite a transcript as a voice-over script via chat completion."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 120,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ValueError("Text generation API key is not configured")
        self.api_key = api_key
        self.base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def write(
        self,
        transcript: str,
        language: str = "es",
        style: str = "documentary",
        target_seconds: Optional[float] = None,
    ) -> str:
        if not transcript.strip():
            raise NoSpeechError("Transcript is empty")

        length_hint = ""
        if target_seconds:
            # ~150 spoken words per minute
            words = max(10, int(target_seconds / 60 * 150))
            length_hint = f" Keep it under {words} words so it fits {int(target_seconds)} seconds."

        messages = [
            {
                "role": "system",
                "content": (
                    "You write short voice-over narrations for vertical social videos. "
                    f"Write in language '{language}' with a {style} tone.{length_hint} "
                    "Return only the narration text, without stage directions or quotes."
                ),
            },
            {"role": "user", "content": f"Original transcript:\n{transcript.strip()}"},
        ]

        response = self.session.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"model": self.model, "messages": messages, "temperature": 0.7},
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            raise SpeechServiceError(f"Script generation failed: {response.status_code} - {_error_detail(response)}")

        choices = response.json().get("choices") or []
        script = ""
        if choices:
            script = str((choices[0].get("message") or {}).get("content") or "").strip()
        if not script:
            raise SpeechServiceError("Script generation returned no text")
        return script


class ElevenLabsSynthesizer:
    """Text-to-speech via ElevenLabs."""

    def __init__(
        self,
        api_key: str,
        model: str = "eleven_multilingual_v2",
        base_url: Optional[str] = None,
        timeout: float = 180,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ValueError("ELEVENLABS_API_KEY not configured")
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or ELEVENLABS_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def synthesize(self, text: str, voice_id: str, output_path: str) -> str:
        if not voice_id:
            raise ValueError("Voice id is required for speech synthesis")

        response = self.session.post(
            f"{self.base_url}/text-to-speech/{voice_id}",
            headers={
                "xi-api-key": self.api_key,
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
            },
            json={
                "text": text,
                "model_id": self.model,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            },
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            raise SpeechServiceError(f"ElevenLabs TTS error: {response.status_code} - {_error_detail(response)}")
        if not response.content:
            raise SpeechServiceError("ElevenLabs TTS returned empty audio")

        with open(output_path, "wb") as f:
            f.write(response.content)
        return output_path
