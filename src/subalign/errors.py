"""
Exception types raised by the synchronization engine.
"""


class SubAlignError( Exception ):
    """Base class for all SubAlign errors."""
    pass


class ConfigError( SubAlignError ):
    """Configuration value rejected during validation, before any detection runs."""
    pass


class AudioDecodeError( SubAlignError ):
    """Media is missing, unreadable, has no audio track or uses an unsupported codec."""

    def __init__( self, message: str, path=None ):
        super().__init__( message );
        self.path = path;


class TranscriptionError( SubAlignError ):
    """
    Cloud transcription failed.

    Raised after retries are exhausted for network failures, or immediately for
    responses that cannot be parsed. The orchestrator treats it as a reason to
    fall back to local detection rather than as a fatal error.
    """

    def __init__( self, message: str, status_code: int = None, attempts: int = 0 ):
        super().__init__( message );
        self.status_code = status_code;
        self.attempts = attempts;


class SubtitleError( SubAlignError ):
    """Subtitle document is empty or could not be read/written."""
    pass
