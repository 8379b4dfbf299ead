"""
Configuration groups consumed by the synchronization engine.

All groups are immutable. Call ``validate()`` (the engine does this on
construction) to reject bad values before any detection is attempted.
"""
import os
from dataclasses import dataclass, field, replace
from typing import Optional

from .errors import ConfigError


SUPPORTED_METHODS = ( "auto", "vad", "cloud" );
RESAMPLE_QUALITIES = ( "low", "medium", "high", "best" );
VAD_SAMPLE_RATES = ( 8000, 16000 );


def _check_unit_range( value: float, name: str ):
    if not ( 0.0 <= value <= 1.0 ):
        raise ConfigError( f"{name} must be between 0.0 and 1.0, got {value}" );


@dataclass( frozen=True )
class VadConfig:
    """Local voice activity detection settings."""

    enabled: bool = True;                 # False: use the heuristic detector instead
    sensitivity: float = 0.25;            # Lower is stricter; speech if p >= 1 - sensitivity
    chunk_size: int = 512;                # Samples per classified chunk
    sample_rate: int = 16000;             # Rate the classifier expects
    padding_chunks: int = 3;              # Chunks added around each speech run
    min_speech_duration_ms: int = 300;
    speech_merge_gap_ms: int = 200;
    max_confidence: float = 0.95;         # Local detection never claims more than this

    @property
    def threshold( self ) -> float:
        return 1.0 - self.sensitivity;

    def validate( self ):
        _check_unit_range( self.sensitivity, "sync.vad.sensitivity" );
        _check_unit_range( self.max_confidence, "sync.vad.max_confidence" );

        chunk = self.chunk_size;
        if chunk < 256 or chunk > 2048 or ( chunk & ( chunk - 1 ) ) != 0:
            raise ConfigError( f"sync.vad.chunk_size must be a power of 2 between 256 and 2048, got {chunk}" );

        if self.sample_rate not in VAD_SAMPLE_RATES:
            raise ConfigError( f"sync.vad.sample_rate must be one of {VAD_SAMPLE_RATES}, got {self.sample_rate}" );

        if self.padding_chunks < 0:
            raise ConfigError( "sync.vad.padding_chunks cannot be negative" );

        if self.min_speech_duration_ms < 0 or self.speech_merge_gap_ms < 0:
            raise ConfigError( "sync.vad durations cannot be negative" );


@dataclass( frozen=True )
class CloudConfig:
    """Cloud transcription provider settings."""

    model: str = "whisper-1";
    language: str = "auto";               # "auto" omits the language field
    temperature: float = 0.0;
    timeout_seconds: int = 30;
    max_retries: int = 3;
    retry_delay_ms: int = 1000;
    min_confidence_threshold: float = 0.7;
    api_key: Optional[str] = field( default=None, repr=False );
    base_url: str = "https://api.openai.com/v1";
    enhance_audio: bool = False;          # Run the speech filter chain before upload

    def validate( self ):
        _check_unit_range( self.temperature, "sync.cloud.temperature" );
        _check_unit_range( self.min_confidence_threshold, "sync.cloud.min_confidence_threshold" );

        if self.timeout_seconds < 1 or self.timeout_seconds > 300:
            raise ConfigError( "sync.cloud.timeout_seconds must be between 1 and 300" );

        if self.max_retries < 0 or self.max_retries > 10:
            raise ConfigError( "sync.cloud.max_retries must be between 0 and 10" );

        if self.retry_delay_ms < 0:
            raise ConfigError( "sync.cloud.retry_delay_ms cannot be negative" );

        if not self.model:
            raise ConfigError( "sync.cloud.model cannot be empty" );


@dataclass( frozen=True )
class SyncConfig:
    """Per-run synchronization thresholds."""

    default_method: str = "auto";
    max_offset_seconds: float = 60.0;
    correlation_threshold: float = 0.8;
    energy_threshold: float = 0.01;               # Frame RMS
    spectral_centroid_min_hz: float = 300.0;
    spectral_centroid_max_hz: float = 3000.0;
    spectral_entropy_threshold: float = 0.5;      # Normalized entropy, 0..1
    min_dialogue_duration_ms: int = 500;
    dialogue_merge_gap_ms: int = 200;
    min_apply_confidence: float = 0.5;
    analysis_window_seconds: int = 30;            # Cloud audio window around the first cue
    auto_detect_sample_rate: bool = True;
    resample_quality: str = "high";
    max_concurrent_jobs: int = 4;
    vad: VadConfig = field( default_factory=VadConfig );
    cloud: CloudConfig = field( default_factory=CloudConfig );

    def validate( self ) -> "SyncConfig":
        """
        Validate every group.

        Returns:
            self, so construction and validation can be chained

        Raises:
            ConfigError: on the first invalid value
        """
        if self.default_method not in SUPPORTED_METHODS:
            raise ConfigError( f"sync.default_method must be one of {SUPPORTED_METHODS}, got '{self.default_method}'" );

        if self.max_offset_seconds <= 0:
            raise ConfigError( "sync.max_offset_seconds must be positive" );

        _check_unit_range( self.correlation_threshold, "sync.correlation_threshold" );
        _check_unit_range( self.spectral_entropy_threshold, "sync.spectral_entropy_threshold" );
        _check_unit_range( self.min_apply_confidence, "sync.min_apply_confidence" );

        if self.energy_threshold < 0:
            raise ConfigError( "sync.energy_threshold cannot be negative" );

        if not ( 0 <= self.spectral_centroid_min_hz < self.spectral_centroid_max_hz ):
            raise ConfigError( "sync.spectral_centroid band must satisfy 0 <= min < max" );

        if self.min_dialogue_duration_ms < 0 or self.dialogue_merge_gap_ms < 0:
            raise ConfigError( "sync dialogue durations cannot be negative" );

        if self.analysis_window_seconds < 1:
            raise ConfigError( "sync.analysis_window_seconds must be at least 1" );

        if self.resample_quality not in RESAMPLE_QUALITIES:
            raise ConfigError( f"sync.resample_quality must be one of {RESAMPLE_QUALITIES}, got '{self.resample_quality}'" );

        if self.max_concurrent_jobs < 1:
            raise ConfigError( "sync.max_concurrent_jobs must be at least 1" );

        self.vad.validate();
        self.cloud.validate();
        return self;

    def with_overrides( self, **changes ) -> "SyncConfig":
        """Return a copy with top-level fields replaced."""
        return replace( self, **changes );

    @classmethod
    def from_env( cls, **kwargs ) -> "SyncConfig":
        """Build a config whose cloud API key comes from OPENAI_API_KEY."""
        config = cls( **kwargs );
        api_key = os.getenv( "OPENAI_API_KEY" );
        if api_key and not config.cloud.api_key:
            config = replace( config, cloud=replace( config.cloud, api_key=api_key ) );
        return config;
