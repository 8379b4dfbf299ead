"""
Cloud transcription and transcript-based offset detection.
"""
import re
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional
import Levenshtein
import openai

from .audio import AudioSegmentExtractor
from .config import CloudConfig, SyncConfig
from .errors import TranscriptionError
from .logging import get_logger
from .result import SyncMethod, SyncResult
from .retry import RetryExhausted, RetryStateMachine
from .subtitles import SubtitleDocument, clean_subtitle_text


WORD_MATCH_RATIO = 0.85;
RETRYABLE_API_ERRORS = ( openai.APIConnectionError, openai.APITimeoutError, openai.APIStatusError );


@dataclass
class TranscriptWord:
    word: str;
    start: float;     # Seconds from the start of the uploaded clip
    end: float;


@dataclass
class TranscriptSegment:
    start: float;
    end: float;
    text: str;


@dataclass
class TranscriptResponse:
    """Verbose transcription: full text plus segment and word timings."""

    text: str;
    segments: List[TranscriptSegment] = field( default_factory=list );
    words: List[TranscriptWord] = field( default_factory=list );
    language: Optional[str] = None;
    duration: Optional[float] = None;

    @property
    def is_empty( self ) -> bool:
        return not self.text.strip() and not self.segments and not self.words;

    @staticmethod
    def _get( obj, key, default=None ):
        if isinstance( obj, dict ):
            return obj.get( key, default );
        return getattr( obj, key, default );

    @classmethod
    def from_payload( cls, payload: Any ) -> "TranscriptResponse":
        """
        Build from an SDK response object or its dict form.

        Raises:
            TranscriptionError: when fields are missing or have the wrong type
        """
        if hasattr( payload, "model_dump" ):
            payload = payload.model_dump();
        if not isinstance( payload, dict ):
            raise TranscriptionError( f"Unexpected transcription response type: {type( payload ).__name__}" );

        get = cls._get;
        try:
            text = payload["text"];
            if not isinstance( text, str ):
                raise TypeError( "text is not a string" );
            segments = [
                TranscriptSegment( float( get( s, "start" ) ), float( get( s, "end" ) ), str( get( s, "text", "" ) ) )
                for s in ( payload.get( "segments" ) or [] )
            ];
            words = [
                TranscriptWord( str( get( w, "word", "" ) ), float( get( w, "start" ) ), float( get( w, "end" ) ) )
                for w in ( payload.get( "words" ) or [] )
            ];
        except ( KeyError, TypeError, ValueError ) as e:
            raise TranscriptionError( f"Malformed transcription response: {e}" ) from e;

        duration = payload.get( "duration" );
        return cls(
            text=text,
            segments=segments,
            words=words,
            language=payload.get( "language" ),
            duration=float( duration ) if duration is not None else None
        );

    def first_speech_time( self ) -> Optional[float]:
        """Start of the first word, else of the first segment."""
        if self.words:
            return self.words[0].start;
        if self.segments:
            return self.segments[0].start;
        return None;


class TranscriptionEngine( ABC ):
    """Base class for speech-to-text providers."""

    def __init__( self, api_key: Optional[str] = None ):
        self.api_key = api_key;
        self.logger = get_logger();

    @abstractmethod
    def transcribe( self, audio_file: Path ) -> TranscriptResponse:
        """Transcribe an audio file with word and segment timings."""
        pass

    def clean_transcript( self, text: str ) -> str:
        """
        Clean transcript text by removing markup and sound descriptions.

        Removes:
        - HTML and WebVTT tags
        - Bracketed descriptions [music], (laughter)
        - Music symbols and extra whitespace
        """
        if not text:
            return "";

        text = re.sub( r'<[^>]+>', '', text );
        text = re.sub( r'\[([^\]]+)\]', '', text );
        text = re.sub( r'\(([^)]+)\)', '', text );
        text = re.sub( r'♪[^♪]*♪', '', text );
        text = re.sub( r'[♪♫★►▼]', '', text );
        text = re.sub( r'\s+', ' ', text );
        return text.strip();


class WhisperApiClient( TranscriptionEngine ):
    """
    OpenAI transcription endpoint with verbose JSON timings.

    The SDK's own retries are disabled; connection errors, timeouts and non-2xx
    responses go through RetryStateMachine with a fixed delay.
    """

    def __init__( self, config: Optional[CloudConfig] = None, client=None, sleep: Callable[[float], None] = time.sleep ):
        self.config = config or CloudConfig();
        super().__init__( self.config.api_key );
        self.sleep = sleep;

        if client is not None:
            self.client = client;
        elif not self.api_key:
            raise TranscriptionError( "OPENAI_API_KEY is not set; cloud transcription unavailable" );
        else:
            self.client = openai.OpenAI(
                api_key=self.api_key,
                base_url=self.config.base_url,
                timeout=float( self.config.timeout_seconds ),
                max_retries=0
            );

    def request_options( self ) -> dict:
        """Fields sent with every upload besides the file itself."""
        options = {
            "model": self.config.model,
            "response_format": "verbose_json",
            "timestamp_granularities": [ "word", "segment" ],
        };
        if self.config.language and self.config.language != "auto":
            options["language"] = self.config.language;
        if self.config.temperature > 0:
            options["temperature"] = self.config.temperature;
        return options;

    def transcribe( self, audio_file: Path ) -> TranscriptResponse:
        """
        Upload an audio file and return its timed transcript.

        Raises:
            TranscriptionError: retries exhausted, non-retryable API error, unreadable file or malformed response
        """
        audio_file = Path( audio_file );
        options = self.request_options();
        self.logger.debug( f"Transcribing {audio_file.name} with {self.config.model}" );

        def _transcribe():
            with open( audio_file, "rb" ) as handle:
                return self.client.audio.transcriptions.create( file=handle, **options );

        machine = RetryStateMachine(
            max_retries=self.config.max_retries,
            delay_seconds=self.config.retry_delay_ms / 1000.0,
            retryable=RETRYABLE_API_ERRORS,
            sleep=self.sleep
        );

        try:
            payload = machine.run( _transcribe );
        except RetryExhausted as e:
            raise TranscriptionError(
                f"Transcription failed after {e.attempts} attempt(s): {e.last_error}",
                status_code=getattr( e.last_error, "status_code", None ),
                attempts=e.attempts
            ) from e;
        except openai.APIError as e:
            raise TranscriptionError( f"Transcription request rejected: {e}", attempts=machine.attempt ) from e;
        except OSError as e:
            raise TranscriptionError( f"Could not read audio for upload {audio_file}: {e}", attempts=machine.attempt ) from e;

        response = TranscriptResponse.from_payload( payload );
        self.logger.debug( f"Transcript ({len( response.words )} words): {self.clean_transcript( response.text )[:100]}..." );
        return response;


def _normalize_words( text: str ) -> List[str]:
    text = clean_subtitle_text( text );
    return [ w for w in re.sub( r"[^\w\s']", ' ', text ).split() if w ];


def lexical_similarity( subtitle_text: str, transcript_text: str ) -> float:
    """
    Fraction of subtitle words found in the transcript.

    A word counts as found on exact match or when its Levenshtein ratio
    against some transcript word is at least 0.85.
    """
    expected = _normalize_words( subtitle_text );
    heard = set( _normalize_words( transcript_text ) );
    if not expected or not heard:
        return 0.0;

    found = 0;
    for word in expected:
        if word in heard or any( Levenshtein.ratio( word, candidate ) >= WORD_MATCH_RATIO for candidate in heard ):
            found += 1;
    return found / float( len( expected ) );


def calculate_cloud_confidence( response: TranscriptResponse, similarity: float ) -> float:
    """0.8 base, +0.1 with segments, +0.05 with word timings, +0.05 scaled by text overlap."""
    confidence = 0.8;
    if response.segments:
        confidence += 0.1;
    if response.words:
        confidence += 0.05;
    confidence += 0.05 * max( 0.0, min( 1.0, similarity ) );
    return min( confidence, 1.0 );


class CloudSyncDetector:
    """
    Offset detection from a cloud transcript of the audio around the first cue.

    The observed onset is the clip start plus the first word's start time; the
    offset is that minus the first cue's start.
    """

    def __init__( self,
                  config: Optional[SyncConfig] = None,
                  client: Optional[TranscriptionEngine] = None,
                  segment_extractor: Optional[AudioSegmentExtractor] = None,
                  debug: bool = False ):
        self.config = config or SyncConfig();
        self._client = client;
        self.segment_extractor = segment_extractor or AudioSegmentExtractor( debug=debug );
        self.logger = get_logger( debug=debug );

    @property
    def client( self ) -> TranscriptionEngine:
        # Created on first use so a missing API key only matters when the cloud is actually asked
        if self._client is None:
            self._client = WhisperApiClient( self.config.cloud );
        return self._client;

    def detect_sync_offset( self, media_file: Path, subtitle: SubtitleDocument, window_seconds: Optional[float] = None ) -> SyncResult:
        """
        Transcribe a window centered on the first cue and compare onsets.

        Raises:
            TranscriptionError: the service failed or answered with garbage
            AudioDecodeError: the window could not be extracted
        """
        started = time.time();
        first_entry = subtitle.first_entry();
        window = window_seconds or self.config.analysis_window_seconds;

        with tempfile.TemporaryDirectory( prefix="subalign_" ) as temp_dir:
            temp_path = Path( temp_dir );
            clip, window_start = self.segment_extractor.extract_segment(
                media_file, first_entry.start_time, window, temp_path / "window.wav"
            );
            if self.config.cloud.enhance_audio:
                clip = self.segment_extractor.prepare_for_transcription( clip, temp_path / "upload.wav", enhance=True );
            response = self.client.transcribe( clip );

        result = self.analyze_transcript( response, subtitle, window_start, window );
        result.processing_duration = time.time() - started;
        return result;

    def analyze_transcript( self, response: TranscriptResponse, subtitle: SubtitleDocument, window_start: float, window_seconds: float ) -> SyncResult:
        first_entry = subtitle.first_entry();
        diagnostics = {
            "window_start": window_start,
            "window_seconds": window_seconds,
            "expected_onset": first_entry.start_time,
            "segments": len( response.segments ),
            "words": len( response.words ),
            "language": response.language,
        };

        onset = response.first_speech_time();
        if response.is_empty or onset is None:
            return SyncResult.no_signal( SyncMethod.CLOUD, "Transcription contained no timed speech", **diagnostics );

        observed = window_start + onset;
        offset = observed - first_entry.start_time;

        window_end = window_start + window_seconds;
        window_text = " ".join(
            entry.text for entry in subtitle.entries
            if entry.end_time > window_start and entry.start_time < window_end
        );
        similarity = lexical_similarity( window_text, response.text );
        confidence = calculate_cloud_confidence( response, similarity );

        diagnostics["observed_onset"] = observed;
        diagnostics["lexical_similarity"] = similarity;
        self.logger.debug( f"Cloud sync: speech at {observed:.3f}s, cue at {first_entry.start_time:.3f}s, "
                           f"offset {offset:+.3f}s, similarity {similarity:.2f}" );

        return SyncResult(
            offset_seconds=offset,
            confidence=confidence,
            method_used=SyncMethod.CLOUD,
            diagnostics=diagnostics
        );
