"""
CLI entry point for SubAlign with argument parsing and environment variable loading.
"""
import argparse
import os
import sys
from pathlib import Path
from dotenv import load_dotenv

from . import __version__
from .config import CloudConfig, SUPPORTED_METHODS, SyncConfig, VadConfig
from .errors import SubAlignError
from .logging import setup_logging


class SubAlignCLI:
    """
    Command line interface for SubAlign subtitle synchronization.

    Supports single media/subtitle runs and batch runs over a directory.
    The OpenAI API key comes from the environment or a .env file.
    """

    def __init__( self ):
        self.parser = self._create_parser();
        self.args = None;
        self.logger = None;
        self.openai_api_key = None;

    def _create_parser( self ):
        """Create argument parser with all SubAlign options."""
        parser = argparse.ArgumentParser(
            prog="subalign",
            description="Align subtitle timing with the speech in a video's audio track",
            epilog="Environment variables: OPENAI_API_KEY, SUBALIGN_LOG_DIR"
        );

        parser.add_argument(
            "--media", "--video", "-v",
            type=Path,
            dest="media",
            help="Path to media file (.mp4, .mkv, .wav, etc.)"
        );

        parser.add_argument(
            "--sub", "--subs", "--srt", "-s",
            type=Path,
            dest="subtitle",
            help="Path to subtitle file (.srt format only)"
        );

        parser.add_argument(
            "--batch",
            type=Path,
            help="Directory of media files with same-named .srt files to synchronize"
        );

        parser.add_argument(
            "--offset",
            type=float,
            help="Apply this offset in seconds instead of detecting one"
        );

        parser.add_argument(
            "--method",
            choices=list( SUPPORTED_METHODS ),
            help="Detection method (default: auto, cloud when OPENAI_API_KEY is set)"
        );

        parser.add_argument(
            "--output", "-o",
            type=Path,
            help="Output subtitle file (default: <name>.synced.srt)"
        );

        parser.add_argument(
            "--output-dir",
            type=Path,
            help="Output directory for batch runs (default: next to each subtitle)"
        );

        parser.add_argument(
            "--max-offset",
            type=float,
            default=60.0,
            help="Largest offset in seconds that will be detected or applied (default: 60)"
        );

        parser.add_argument(
            "--vad-sensitivity",
            type=float,
            default=0.25,
            help="Speech classifier sensitivity (0.0-1.0, default: 0.25)"
        );

        parser.add_argument(
            "--no-vad",
            action="store_true",
            help="Use the heuristic dialogue detector instead of the speech classifier"
        );

        parser.add_argument(
            "--enhance-audio",
            action="store_true",
            help="Filter audio for speech before uploading it for transcription"
        );

        parser.add_argument(
            "--jobs", "-j",
            type=int,
            default=4,
            help="Concurrent jobs in batch mode (default: 4)"
        );

        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Detect the offset without writing any subtitle file"
        );

        parser.add_argument(
            "--debug",
            action="store_true",
            help="Enable debug mode with verbose output"
        );

        return parser;

    def _load_environment( self ):
        """Load environment variables from .env file and system."""
        env_file = Path( ".env" );
        if env_file.exists():
            load_dotenv( env_file );

        self.openai_api_key = os.getenv( "OPENAI_API_KEY" );

    def _validate_arguments( self ):
        """Validate parsed arguments and environment setup."""
        errors = [];
        args = self.args;

        if args.batch:
            if args.media or args.subtitle:
                errors.append( "--batch cannot be combined with --media/--sub" );
            if not args.batch.exists():
                errors.append( f"Batch directory not found: {args.batch}" );
            if args.offset is not None:
                errors.append( "--offset is not supported in batch mode" );
        else:
            if not args.subtitle:
                errors.append( "Subtitle file is required (--sub)" );
            elif not args.subtitle.exists():
                errors.append( f"Subtitle file not found: {args.subtitle}" );
            elif args.subtitle.suffix.lower() != ".srt":
                errors.append( f"Only .srt subtitle files are supported, got: {args.subtitle.suffix}" );

            if args.offset is None:
                if not args.media:
                    errors.append( "Media file is required unless --offset is given" );
                elif not args.media.exists():
                    errors.append( f"Media file not found: {args.media}" );

        if args.method == "cloud" and not self.openai_api_key:
            errors.append( "OpenAI API key not found. Set OPENAI_API_KEY environment variable." );

        if not ( 0.0 <= args.vad_sensitivity <= 1.0 ):
            errors.append( "VAD sensitivity must be between 0.0 and 1.0" );

        if args.max_offset <= 0:
            errors.append( "Maximum offset must be positive" );

        if args.jobs < 1:
            errors.append( "Number of jobs must be at least 1" );

        return errors;

    def parse_args( self, argv=None ):
        """Parse command line arguments and validate configuration."""
        self.args = self.parser.parse_args( argv );

        self.logger = setup_logging( debug=self.args.debug );
        self._load_environment();

        errors = self._validate_arguments();
        if errors:
            self.logger.error( "Configuration errors:" );
            for error in errors:
                self.logger.error( f"  - {error}" );
            sys.exit( 1 );

        self.logger.info( f"SubAlign v{__version__} starting..." );
        if self.args.batch:
            self.logger.info( f"Batch directory: {self.args.batch}" );
        else:
            if self.args.media:
                self.logger.info( f"Media: {self.args.media}" );
            self.logger.info( f"Subtitles: {self.args.subtitle}" );
        self.logger.info( f"Debug mode: {self.args.debug}" );

        return self.args;

    def build_config( self ) -> SyncConfig:
        """
        Translate arguments into a validated SyncConfig.

        Raises:
            ConfigError: if a value is out of range
        """
        args = self.args;
        return SyncConfig(
            default_method=args.method or "auto",
            max_offset_seconds=args.max_offset,
            max_concurrent_jobs=args.jobs,
            vad=VadConfig( enabled=not args.no_vad, sensitivity=args.vad_sensitivity ),
            cloud=CloudConfig( api_key=self.openai_api_key, enhance_audio=args.enhance_audio )
        ).validate();


def _run_single( cli: SubAlignCLI, engine ) -> bool:
    from .backup import BackupManager;
    from .subtitles import corrected_output_path, load_subtitles, save_subtitles;

    args = cli.args;
    logger = cli.logger;
    document = load_subtitles( args.subtitle );

    result = engine.synchronize(
        args.media,
        document,
        method=args.method,
        manual_offset=args.offset,
        apply=not args.dry_run
    );

    logger.info( "\n=== SYNCHRONIZATION RESULT ===" );
    logger.info( f"Method: {result.method_used.value}" );
    logger.info( f"Offset: {result.offset_seconds:+.3f}s" );
    logger.info( f"Confidence: {result.confidence:.2f}" );
    if "fallback" in result.diagnostics:
        logger.info( f"Fallback: {result.diagnostics['fallback']['reason']}" );
    for warning in result.warnings:
        logger.warning( warning );

    if args.dry_run:
        logger.info( "✓ Dry run completed - no files modified" );
        return True;

    if not result.diagnostics.get( "applied" ):
        logger.error( "Offset not applied; subtitle file unchanged" );
        return False;

    output_file = args.output or corrected_output_path( args.subtitle );
    BackupManager().create_backup( output_file );
    save_subtitles( document, output_file );
    logger.info( f"✓ Synchronized subtitles saved to: {output_file}" );
    return True;


def _run_batch( cli: SubAlignCLI, engine ) -> bool:
    from .sync import BatchSynchronizer, discover_pairs;

    args = cli.args;
    pairs = discover_pairs( args.batch );
    if not pairs:
        cli.logger.error( f"No media/subtitle pairs found in {args.batch}" );
        return False;

    runner = BatchSynchronizer(
        engine,
        method=args.method,
        output_dir=args.output_dir,
        dry_run=args.dry_run
    );
    results = runner.run( pairs );
    return all( item.success for item in results );


def main( argv=None ):
    """Main entry point for the SubAlign CLI."""
    cli = SubAlignCLI();
    args = cli.parse_args( argv );

    try:
        from .sync import SyncEngine;

        engine = SyncEngine( cli.build_config(), debug=args.debug );
        succeeded = _run_batch( cli, engine ) if args.batch else _run_single( cli, engine );
        if not succeeded:
            sys.exit( 1 );
    except KeyboardInterrupt:
        cli.logger.warning( "Interrupted by user" );
        sys.exit( 130 );
    except SubAlignError as e:
        cli.logger.error( f"Synchronization failed: {e}" );
        if args.debug:
            raise;
        sys.exit( 1 );


if __name__ == "__main__":
    main();
