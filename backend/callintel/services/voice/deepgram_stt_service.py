# backend/callintel/services/voice/deepgram_stt_service.py
import logging
from typing import Any, Dict, List, Optional

from deepgram import DeepgramClient, PrerecordedOptions

from callintel.core.config import Settings, settings as default_settings
from callintel.core.exceptions import UpstreamProviderError
from callintel.schemas.schemas import SttResult, TranscriptTurn

logger = logging.getLogger(__name__)


def map_language_code_to_deepgram(language: Optional[str]) -> Optional[str]:
    """Normalize a language code to the form Deepgram accepts."""
    if not language:
        return None
    language = language.strip()
    if "-" in language:
        base, region = language.split("-", 1)
        return f"{base.lower()}-{region.upper()}"
    return language.lower()


def parse_prerecorded_response(result: Dict[str, Any], default_language: str = "en") -> SttResult:
    """Turn a Deepgram pre-recorded response dict into an SttResult.

    Speaker turns come from utterances when diarization produced them, else the
    whole transcript becomes a single turn.
    """
    channels = (result.get("results") or {}).get("channels") or []
    if not channels or not channels[0].get("alternatives"):
        raise UpstreamProviderError("Deepgram returned no transcription channels", provider="deepgram")

    channel = channels[0]
    alternative = channel["alternatives"][0]
    text = (alternative.get("transcript") or "").strip()
    confidence = alternative.get("confidence")

    turns: List[TranscriptTurn] = []
    for utterance in (result.get("results") or {}).get("utterances") or []:
        utterance_text = (utterance.get("transcript") or "").strip()
        if not utterance_text:
            continue
        speaker = utterance.get("speaker")
        turns.append(TranscriptTurn(
            speaker=f"speaker_{speaker}" if speaker is not None else "unknown",
            start=utterance.get("start"),
            end=utterance.get("end"),
            text=utterance_text
        ))

    if not turns and text:
        words = alternative.get("words") or []
        turns.append(TranscriptTurn(
            speaker="unknown",
            start=words[0].get("start") if words else None,
            end=words[-1].get("end") if words else None,
            text=text
        ))

    detected = channel.get("detected_language")
    if not detected and alternative.get("languages"):
        detected = alternative["languages"][0]

    return SttResult(
        text=text,
        turns=turns,
        language=detected or default_language,
        confidence=confidence
    )


class DeepgramSTTService:
    """Pre-recorded speech-to-text through Deepgram, by audio URL."""

    provider_name = "deepgram"

    def __init__(self, settings: Settings = default_settings, client: Optional[DeepgramClient] = None):
        self.settings = settings
        if client is not None:
            self.client = client
        elif not settings.DEEPGRAM_API_KEY or settings.DEEPGRAM_API_KEY == "NOT_SET":
            logger.warning("Deepgram API key not configured")
            self.client = None
        else:
            try:
                self.client = DeepgramClient(settings.DEEPGRAM_API_KEY)
                logger.info("Deepgram client initialized successfully")
            except Exception as e:
                logger.error(f"Failed to initialize Deepgram client: {e}")
                self.client = None

    def is_available(self) -> bool:
        """Check if Deepgram service is available."""
        return self.client is not None

    async def transcribe(self, audio_url: str) -> SttResult:
        """Transcribe a recording reachable at ``audio_url``.

        Raises:
            UpstreamProviderError: client missing, request failed, or empty result
        """
        if not self.is_available():
            raise UpstreamProviderError("Deepgram service not available", provider=self.provider_name)

        options = PrerecordedOptions(
            model=self.settings.DEEPGRAM_MODEL,
            language=map_language_code_to_deepgram(self.settings.DEEPGRAM_LANGUAGE),
            punctuate=True,
            smart_format=True,
            diarize=True,
            utterances=True
        )

        try:
            response = await self.client.listen.asyncrest.v("1").transcribe_url(
                {"url": audio_url}, options
            )
        except Exception as e:
            logger.error(f"Error transcribing audio: {e}")
            raise UpstreamProviderError(f"Deepgram request failed: {e}", provider=self.provider_name)

        result = response.to_dict() if hasattr(response, "to_dict") else dict(response)
        stt = parse_prerecorded_response(result, self.settings.DEEPGRAM_LANGUAGE)

        if not stt.text:
            raise UpstreamProviderError("Deepgram returned an empty transcript", provider=self.provider_name)

        logger.info(f"Successfully transcribed audio: {len(stt.text)} characters, {len(stt.turns)} turns")
        return stt
