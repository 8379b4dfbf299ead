"""
Synchronization engine: method selection, detection with fallback, scoring
and conditional application of the offset. Also the batch runner.
"""
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from rich.console import Console

from .backup import BackupManager
from .config import SyncConfig
from .errors import ConfigError, SubAlignError
from .logging import get_logger
from .result import SyncMethod, SyncResult
from .subtitles import SubtitleDocument, corrected_output_path, load_subtitles, save_subtitles, shift_subtitles
from .transcribe import CloudSyncDetector
from .vad import VadSyncDetector


MEDIA_EXTENSIONS = ( ".mp4", ".mkv", ".avi", ".mov", ".m4v", ".webm", ".wav", ".mp3", ".flac", ".m4a", ".aac", ".ogg" );


class SyncState( Enum ):
    IDLE = "idle";
    SELECTING_METHOD = "selecting_method";
    DETECTING = "detecting";
    FALLBACK = "fallback";
    SCORING = "scoring";
    APPLYING = "applying";
    REPORTING = "reporting";
    DONE = "done";


class SyncEngine:
    """
    Runs one synchronization per call.

    Flow:
    1. Select method (manual offset always wins)
    2. Detect with the chosen strategy; cloud failures fall back to local VAD
    3. Score: clamp offsets beyond max_offset_seconds
    4. Apply when confidence exceeds min_apply_confidence, otherwise report only

    The visited states are recorded in ``diagnostics["state_trace"]``.
    """

    def __init__( self,
                  config: Optional[SyncConfig] = None,
                  vad_detector: Optional[VadSyncDetector] = None,
                  cloud_detector: Optional[CloudSyncDetector] = None,
                  debug: bool = False ):
        self.config = ( config or SyncConfig.from_env() ).validate();
        self.logger = get_logger( debug=debug );
        self.vad_detector = vad_detector or VadSyncDetector( self.config, debug=debug );
        self._cloud_injected = cloud_detector is not None;
        self.cloud_detector = cloud_detector or CloudSyncDetector( self.config, debug=debug );

        self._detectors = {
            SyncMethod.LOCAL_VAD: self._detect_local,
            SyncMethod.CLOUD: self._detect_cloud,
        };

    def _transition( self, trace: List[str], state: SyncState ):
        trace.append( state.value );
        self.logger.debug( f"Sync state -> {state.value}" );

    def cloud_available( self ) -> bool:
        return self._cloud_injected or bool( self.config.cloud.api_key );

    def select_method( self, method=None ) -> SyncMethod:
        """
        Resolve a method name, SyncMethod or None (configured default).

        "auto" picks the cloud when credentials are available, local VAD otherwise.
        """
        if isinstance( method, SyncMethod ):
            return method;

        name = ( method or self.config.default_method ).lower();
        if name == "auto":
            return SyncMethod.CLOUD if self.cloud_available() else SyncMethod.LOCAL_VAD;

        try:
            return SyncMethod.from_name( name );
        except ValueError as e:
            raise ConfigError( str( e ) ) from e;

    def _detect_local( self, media_file: Path, subtitle: SubtitleDocument ) -> SyncResult:
        return self.vad_detector.detect_sync_offset( media_file, subtitle );

    def _detect_cloud( self, media_file: Path, subtitle: SubtitleDocument ) -> SyncResult:
        return self.cloud_detector.detect_sync_offset( media_file, subtitle, self.config.analysis_window_seconds );

    def _detect( self, media_file: Path, subtitle: SubtitleDocument, method, trace: List[str] ) -> SyncResult:
        self._transition( trace, SyncState.SELECTING_METHOD );
        chosen = self.select_method( method );
        if chosen == SyncMethod.MANUAL:
            raise ConfigError( "Manual synchronization needs an explicit offset" );

        self.logger.info( f"Detecting offset with {chosen.value}" );
        self._transition( trace, SyncState.DETECTING );

        fallback = None;
        if chosen == SyncMethod.CLOUD:
            try:
                result = self._detectors[chosen]( media_file, subtitle );
            except SubAlignError as e:
                fallback = { "from": SyncMethod.CLOUD.value, "reason": str( e ) };
                self.logger.warning( f"Cloud detection failed, falling back to local VAD: {e}" );
            else:
                threshold = self.config.cloud.min_confidence_threshold;
                if result.confidence < threshold:
                    fallback = {
                        "from": SyncMethod.CLOUD.value,
                        "reason": f"Cloud confidence {result.confidence:.2f} below {threshold:.2f}",
                        "cloud_offset": result.offset_seconds,
                        "cloud_confidence": result.confidence,
                    };
                    self.logger.warning( f"{fallback['reason']}, falling back to local VAD" );

            if fallback is not None:
                self._transition( trace, SyncState.FALLBACK );
                self._transition( trace, SyncState.SELECTING_METHOD );
                self._transition( trace, SyncState.DETECTING );
                result = self._detectors[SyncMethod.LOCAL_VAD]( media_file, subtitle );
        else:
            result = self._detectors[chosen]( media_file, subtitle );

        if fallback is not None:
            result.diagnostics["fallback"] = fallback;
            result.warnings.append( f"Fell back to local VAD: {fallback['reason']}" );

        self._transition( trace, SyncState.SCORING );
        return self._score( result );

    def _score( self, result: SyncResult ) -> SyncResult:
        limit = self.config.max_offset_seconds;
        if abs( result.offset_seconds ) > limit:
            clamped = limit if result.offset_seconds > 0 else -limit;
            message = f"Detected offset {result.offset_seconds:+.3f}s exceeds ±{limit:.1f}s, clamped to {clamped:+.1f}s";
            self.logger.warning( message );
            result.warnings.append( message );
            result.diagnostics["unclamped_offset"] = result.offset_seconds;
            result.offset_seconds = clamped;
        return result;

    def _finish( self, result: SyncResult, trace: List[str], started: float ) -> SyncResult:
        self._transition( trace, SyncState.DONE );
        result.diagnostics["state_trace"] = trace;
        result.processing_duration = time.time() - started;
        return result;

    def detect_sync_offset( self, media_file: Path, subtitle: SubtitleDocument, method=None ) -> SyncResult:
        """
        Detect the offset without touching the subtitles.

        Raises:
            AudioDecodeError: media cannot be decoded by the local path
            SubtitleError: empty subtitle document
            ConfigError: unknown method
        """
        started = time.time();
        trace = [ SyncState.IDLE.value ];
        result = self._detect( Path( media_file ), subtitle, method, trace );
        self._transition( trace, SyncState.REPORTING );
        return self._finish( result, trace, started );

    def synchronize( self, media_file: Path, subtitle: SubtitleDocument, method=None, manual_offset: Optional[float] = None, apply: bool = True ) -> SyncResult:
        """
        Detect and, when confident enough, apply the offset to the document in place.

        A manual offset skips detection entirely.
        """
        if manual_offset is not None:
            return self.apply_manual_offset( subtitle, manual_offset, apply=apply );

        started = time.time();
        trace = [ SyncState.IDLE.value ];
        result = self._detect( Path( media_file ), subtitle, method, trace );

        min_confidence = self.config.min_apply_confidence;
        if apply and result.confidence > min_confidence:
            self._transition( trace, SyncState.APPLYING );
            result.diagnostics["entries_shifted"] = self.apply_offset( subtitle, result.offset_seconds );
            result.diagnostics["applied"] = True;
            self.logger.info( f"Applied offset {result.offset_seconds:+.3f}s (confidence {result.confidence:.2f})" );
        else:
            self._transition( trace, SyncState.REPORTING );
            result.diagnostics["applied"] = False;
            if apply:
                message = f"Confidence {result.confidence:.2f} not above {min_confidence:.2f}; subtitles left unchanged";
                self.logger.warning( message );
                result.warnings.append( message );

        return self._finish( result, trace, started );

    def apply_manual_offset( self, subtitle: SubtitleDocument, offset_seconds: float, apply: bool = True ) -> SyncResult:
        """
        Shift by a user-supplied offset.

        Raises:
            ConfigError: when |offset| exceeds max_offset_seconds
        """
        started = time.time();
        trace = [ SyncState.IDLE.value ];
        self._transition( trace, SyncState.SELECTING_METHOD );

        limit = self.config.max_offset_seconds;
        if abs( offset_seconds ) > limit:
            raise ConfigError( f"Manual offset {offset_seconds:+.3f}s exceeds the maximum of ±{limit:.1f}s" );

        result = SyncResult(
            offset_seconds=offset_seconds,
            confidence=1.0,
            method_used=SyncMethod.MANUAL,
            diagnostics={ "applied": apply }
        );

        if apply:
            self._transition( trace, SyncState.APPLYING );
            result.diagnostics["entries_shifted"] = self.apply_offset( subtitle, offset_seconds );
            self.logger.info( f"Applied manual offset {offset_seconds:+.3f}s" );
        else:
            self._transition( trace, SyncState.REPORTING );

        return self._finish( result, trace, started );

    def apply_offset( self, subtitle: SubtitleDocument, offset_seconds: float ) -> int:
        """Shift every cue; times clamp at zero. Returns the number of entries shifted."""
        return shift_subtitles( subtitle, offset_seconds );


@dataclass
class BatchItemResult:
    media_file: Path;
    subtitle_file: Path;
    result: Optional[SyncResult] = None;
    output_file: Optional[Path] = None;
    error: Optional[str] = None;

    @property
    def success( self ) -> bool:
        return self.error is None;


def discover_pairs( directory: Path ) -> List[Tuple[Path, Path]]:
    """Match media files with .srt files of the same stem in one directory."""
    directory = Path( directory );
    subtitles = { p.stem: p for p in directory.iterdir() if p.is_file() and p.suffix.lower() == ".srt" };
    pairs = [];
    for media in sorted( directory.iterdir() ):
        if media.is_file() and media.suffix.lower() in MEDIA_EXTENSIONS and media.stem in subtitles:
            pairs.append( ( media, subtitles[media.stem] ) );
    return pairs;


class BatchSynchronizer:
    """
    Synchronizes many media/subtitle pairs on a thread pool.

    Each pair is loaded, synchronized and saved on its own; a failure is
    recorded for that pair and the rest continue.
    """

    def __init__( self,
                  engine: SyncEngine,
                  method=None,
                  output_dir: Optional[Path] = None,
                  dry_run: bool = False,
                  backup: Optional[BackupManager] = None,
                  console: Optional[Console] = None ):
        self.engine = engine;
        self.method = method;
        self.output_dir = Path( output_dir ) if output_dir else None;
        self.dry_run = dry_run;
        self.backup = backup or BackupManager();
        self.console = console or Console();
        self.logger = get_logger();

    def output_path( self, subtitle_file: Path ) -> Path:
        default = corrected_output_path( subtitle_file );
        return self.output_dir / default.name if self.output_dir else default;

    def process_pair( self, media_file: Path, subtitle_file: Path ) -> BatchItemResult:
        item = BatchItemResult( media_file=Path( media_file ), subtitle_file=Path( subtitle_file ) );
        document = load_subtitles( item.subtitle_file );
        item.result = self.engine.synchronize( item.media_file, document, method=self.method, apply=not self.dry_run );

        if item.result.diagnostics.get( "applied" ):
            output_file = self.output_path( item.subtitle_file );
            output_file.parent.mkdir( parents=True, exist_ok=True );
            self.backup.create_backup( output_file );
            item.output_file = save_subtitles( document, output_file );
        return item;

    def _report( self, item: BatchItemResult ):
        name = item.media_file.name;
        if not item.success:
            self.console.print( f"[red]✗[/red] {name}: {item.error}" );
            return;

        result = item.result;
        status = "saved" if item.output_file else "not applied";
        self.console.print(
            f"[green]✓[/green] {name}: offset {result.offset_seconds:+.3f}s, "
            f"confidence {result.confidence:.2f} ({result.method_used.value}, {status})"
        );

    def run( self, pairs: Sequence[Tuple[Path, Path]] ) -> List[BatchItemResult]:
        """Process every pair; results come back in input order."""
        results: List[Optional[BatchItemResult]] = [ None ] * len( pairs );
        workers = min( self.engine.config.max_concurrent_jobs, max( 1, len( pairs ) ) );
        self.logger.info( f"Synchronizing {len( pairs )} file pair(s) with {workers} worker(s)" );

        with ThreadPoolExecutor( max_workers=workers ) as executor:
            futures = {
                executor.submit( self.process_pair, media, sub ): index
                for index, ( media, sub ) in enumerate( pairs )
            };
            for future in as_completed( futures ):
                index = futures[future];
                media, sub = pairs[index];
                try:
                    item = future.result();
                except Exception as e:
                    self.logger.error( f"Synchronization failed for {Path( media ).name}: {e}" );
                    item = BatchItemResult( media_file=Path( media ), subtitle_file=Path( sub ), error=str( e ) );
                results[index] = item;
                self._report( item );

        succeeded = sum( 1 for item in results if item.success );
        self.logger.info( f"Batch complete: {succeeded}/{len( pairs )} succeeded" );
        return results;
