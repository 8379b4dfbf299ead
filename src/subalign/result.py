"""
Result types shared by every detection strategy.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class SyncMethod( Enum ):
    """Detection strategies. Closed set; the engine dispatches on it."""

    MANUAL = "manual";
    LOCAL_VAD = "local_vad";
    CLOUD = "cloud";

    @classmethod
    def from_name( cls, name: str ) -> "SyncMethod":
        aliases = {
            "manual": cls.MANUAL,
            "vad": cls.LOCAL_VAD,
            "local_vad": cls.LOCAL_VAD,
            "local": cls.LOCAL_VAD,
            "cloud": cls.CLOUD,
            "whisper": cls.CLOUD,
        };
        try:
            return aliases[name.lower()];
        except KeyError:
            raise ValueError( f"Unknown sync method: {name}" );


@dataclass
class SyncResult:
    """Outcome of one synchronization attempt."""

    offset_seconds: float;              # Positive: subtitles must be delayed
    confidence: float;                  # 0.0-1.0
    method_used: SyncMethod;
    correlation_peak: float = 0.0;
    diagnostics: Dict[str, Any] = field( default_factory=dict );
    processing_duration: float = 0.0;   # Seconds
    warnings: List[str] = field( default_factory=list );

    def __post_init__( self ):
        self.confidence = min( 1.0, max( 0.0, float( self.confidence ) ) );
        self.offset_seconds = float( self.offset_seconds );

    @property
    def has_signal( self ) -> bool:
        return self.confidence > 0.0;

    @classmethod
    def no_signal( cls, method: SyncMethod, reason: str, **diagnostics ) -> "SyncResult":
        """Zero-confidence result for conditions where nothing usable was detected."""
        diagnostics["reason"] = reason;
        return cls(
            offset_seconds=0.0,
            confidence=0.0,
            method_used=method,
            diagnostics=diagnostics,
            warnings=[ reason ]
        );

    def __repr__( self ):
        return f"SyncResult(offset={self.offset_seconds:+.3f}s, confidence={self.confidence:.2f}, " \
               f"method={self.method_used.value})";
