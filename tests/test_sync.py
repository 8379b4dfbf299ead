"""
Test cases for the synchronization engine and the batch runner.
"""
import io
import pytest
from pathlib import Path
from unittest.mock import Mock, patch
import sys
import ffmpeg
import httpx
import numpy as np
import openai
from rich.console import Console

# Add src directory to path for testing
sys.path.insert( 0, str( Path( __file__ ).parent.parent / "src" ) );

from subalign.audio import AudioFeatureExtractor, AudioSamples, AudioSegmentExtractor
from subalign.backup import BackupManager
from subalign.config import CloudConfig, SyncConfig, VadConfig
from subalign.errors import AudioDecodeError, ConfigError, TranscriptionError
from subalign.result import SyncMethod, SyncResult
from subalign.subtitles import SubtitleDocument, SubtitleEntry, load_subtitles
from subalign.sync import BatchSynchronizer, SyncEngine, discover_pairs
from subalign.transcribe import CloudSyncDetector, WhisperApiClient
from subalign.vad import LocalVadDetector, VadSyncDetector


SRT_TEXT = """1
00:00:01,000 --> 00:00:03,000
Hello there.

2
00:00:05,000 --> 00:00:06,500
General Kenobi.
""";


class LoudnessClassifier:
    def reset( self ):
        pass

    def predict( self, chunk ):
        return 0.9 if float( np.sqrt( np.mean( np.square( chunk ) ) ) ) > 0.01 else 0.05;


def speech_audio( start: float, end: float, seconds: float = 10.0, rate: int = 16000 ) -> AudioSamples:
    t = np.arange( int( seconds * rate ) ) / float( rate );
    data = np.where( ( t >= start ) & ( t < end ), 0.5 * np.sin( 2 * np.pi * 1000.0 * t ), 0.0 );
    return AudioSamples.from_array( data.astype( np.float32 ), rate );


def document( *spans ) -> SubtitleDocument:
    return SubtitleDocument( entries=[
        SubtitleEntry( i + 1, start, end, f"line {i + 1}" ) for i, ( start, end ) in enumerate( spans )
    ] );


def detected( offset: float, confidence: float, method: SyncMethod = SyncMethod.LOCAL_VAD ) -> SyncResult:
    return SyncResult( offset_seconds=offset, confidence=confidence, method_used=method );


def engine_with( vad_result=None, cloud_result=None, config: SyncConfig = None ):
    vad = Mock();
    cloud = Mock();
    if isinstance( vad_result, Exception ):
        vad.detect_sync_offset.side_effect = vad_result;
    else:
        vad.detect_sync_offset.return_value = vad_result;
    if isinstance( cloud_result, Exception ):
        cloud.detect_sync_offset.side_effect = cloud_result;
    else:
        cloud.detect_sync_offset.return_value = cloud_result;
    return SyncEngine( config or SyncConfig(), vad_detector=vad, cloud_detector=cloud ), vad, cloud;


class TestMethodSelection:
    """auto/vad/cloud resolution."""

    def test_auto_without_credentials_is_local( self ):
        engine = SyncEngine( SyncConfig() );
        assert engine.select_method( "auto" ) == SyncMethod.LOCAL_VAD;

    def test_auto_with_credentials_is_cloud( self ):
        engine = SyncEngine( SyncConfig( cloud=CloudConfig( api_key="sk-test" ) ) );
        assert engine.select_method() == SyncMethod.CLOUD;

    def test_aliases_and_unknown_names( self ):
        engine = SyncEngine( SyncConfig() );
        assert engine.select_method( "vad" ) == SyncMethod.LOCAL_VAD;
        assert engine.select_method( SyncMethod.CLOUD ) == SyncMethod.CLOUD;
        with pytest.raises( ConfigError ):
            engine.select_method( "telepathy" );

    def test_invalid_config_is_rejected_before_detection( self ):
        vad = Mock();
        with pytest.raises( ConfigError ):
            SyncEngine( SyncConfig( vad=VadConfig( chunk_size=500 ) ), vad_detector=vad );
        vad.detect_sync_offset.assert_not_called();


class TestDetection:
    """Dispatch, fallback and scoring."""

    def test_vad_method_never_calls_cloud( self ):
        engine, vad, cloud = engine_with( vad_result=detected( 0.5, 0.9 ) );
        result = engine.detect_sync_offset( Path( "movie.mkv" ), document( ( 1.0, 3.0 ) ), method="vad" );

        assert result.method_used == SyncMethod.LOCAL_VAD;
        cloud.detect_sync_offset.assert_not_called();
        assert result.diagnostics["state_trace"] == [ "idle", "selecting_method", "detecting", "scoring", "reporting", "done" ];

    def test_cloud_success_has_no_fallback( self ):
        engine, vad, cloud = engine_with( cloud_result=detected( 1.2, 0.95, SyncMethod.CLOUD ) );
        result = engine.detect_sync_offset( Path( "movie.mkv" ), document( ( 1.0, 3.0 ) ), method="cloud" );

        assert result.method_used == SyncMethod.CLOUD;
        assert "fallback" not in result.diagnostics;
        vad.detect_sync_offset.assert_not_called();

    def test_cloud_error_falls_back_to_vad( self ):
        engine, vad, cloud = engine_with(
            vad_result=detected( 0.5, 0.9 ),
            cloud_result=TranscriptionError( "HTTP 500", status_code=500, attempts=4 )
        );
        result = engine.detect_sync_offset( Path( "movie.mkv" ), document( ( 1.0, 3.0 ) ), method="cloud" );

        assert result.method_used == SyncMethod.LOCAL_VAD;
        assert result.diagnostics["fallback"]["from"] == "cloud";
        assert "HTTP 500" in result.diagnostics["fallback"]["reason"];
        assert "fallback" in result.diagnostics["state_trace"];
        vad.detect_sync_offset.assert_called_once();

    def test_low_cloud_confidence_falls_back( self ):
        engine, vad, cloud = engine_with(
            vad_result=detected( 0.5, 0.9 ),
            cloud_result=detected( 4.0, 0.3, SyncMethod.CLOUD )
        );
        result = engine.detect_sync_offset( Path( "movie.mkv" ), document( ( 1.0, 3.0 ) ), method="cloud" );

        assert result.method_used == SyncMethod.LOCAL_VAD;
        assert result.diagnostics["fallback"]["cloud_offset"] == 4.0;
        assert result.diagnostics["fallback"]["cloud_confidence"] == pytest.approx( 0.3 );

    def test_vad_errors_propagate( self ):
        engine, vad, cloud = engine_with( vad_result=AudioDecodeError( "broken", Path( "movie.mkv" ) ) );
        with pytest.raises( AudioDecodeError ):
            engine.detect_sync_offset( Path( "movie.mkv" ), document( ( 1.0, 3.0 ) ), method="vad" );

    @pytest.mark.parametrize( "raw,expected", [ ( 75.0, 60.0 ), ( -90.0, -60.0 ) ] )
    def test_offsets_beyond_max_are_clamped( self, raw, expected ):
        engine, vad, cloud = engine_with( vad_result=detected( raw, 0.9 ) );
        result = engine.detect_sync_offset( Path( "movie.mkv" ), document( ( 1.0, 3.0 ) ), method="vad" );

        assert result.offset_seconds == expected;
        assert result.diagnostics["unclamped_offset"] == raw;
        assert result.warnings;


class TestSynchronize:
    """Application of detected and manual offsets."""

    def test_confident_offset_is_applied( self ):
        engine, vad, cloud = engine_with( vad_result=detected( 0.5, 0.9 ) );
        subs = document( ( 1.0, 3.0 ), ( 5.0, 6.0 ) );
        result = engine.synchronize( Path( "movie.mkv" ), subs, method="vad" );

        assert result.diagnostics["applied"] is True;
        assert result.diagnostics["entries_shifted"] == 2;
        assert subs.spans() == [ ( 1.5, 3.5 ), ( 5.5, 6.5 ) ];
        assert "applying" in result.diagnostics["state_trace"];

    def test_weak_offset_is_reported_only( self ):
        engine, vad, cloud = engine_with( vad_result=detected( 0.5, 0.4 ) );
        subs = document( ( 1.0, 3.0 ) );
        result = engine.synchronize( Path( "movie.mkv" ), subs, method="vad" );

        assert result.diagnostics["applied"] is False;
        assert subs.spans() == [ ( 1.0, 3.0 ) ];
        assert "reporting" in result.diagnostics["state_trace"];
        assert result.warnings;

    def test_dry_run_never_applies( self ):
        engine, vad, cloud = engine_with( vad_result=detected( 0.5, 0.9 ) );
        subs = document( ( 1.0, 3.0 ) );
        engine.synchronize( Path( "movie.mkv" ), subs, method="vad", apply=False );
        assert subs.spans() == [ ( 1.0, 3.0 ) ];

    def test_manual_delay( self ):
        engine, vad, cloud = engine_with();
        subs = document( ( 0.0, 1.0 ) );
        result = engine.synchronize( Path( "movie.mkv" ), subs, manual_offset=2.5 );

        assert subs.spans() == [ ( 2.5, 3.5 ) ];
        assert result.method_used == SyncMethod.MANUAL;
        assert result.confidence == 1.0;
        assert result.diagnostics["state_trace"] == [ "idle", "selecting_method", "applying", "done" ];
        vad.detect_sync_offset.assert_not_called();

    def test_manual_advance_clamps_at_zero( self ):
        engine, vad, cloud = engine_with();
        subs = document( ( 1.0, 2.0 ) );
        engine.apply_manual_offset( subs, -5.0 );
        assert subs.spans() == [ ( 0.0, 0.0 ) ];

    def test_manual_offset_beyond_max_is_rejected( self ):
        engine, vad, cloud = engine_with();
        subs = document( ( 1.0, 2.0 ) );
        with pytest.raises( ConfigError ):
            engine.apply_manual_offset( subs, 61.0 );
        assert subs.spans() == [ ( 1.0, 2.0 ) ];


class TestCloudFallbackIntegration:
    """A failing transcription service hands over to real local detection."""

    def test_server_errors_fall_back_to_vad( self, tmp_path ):
        config = SyncConfig(
            auto_detect_sample_rate=False,
            vad=VadConfig( padding_chunks=0 ),
            cloud=CloudConfig( api_key="sk-test", max_retries=2, retry_delay_ms=0 )
        );

        request = httpx.Request( "POST", "https://api.openai.com/v1/audio/transcriptions" );
        api = Mock();
        api.audio.transcriptions.create.side_effect = openai.InternalServerError(
            "boom", response=httpx.Response( 500, request=request ), body=None
        );

        segments = Mock();

        def extract_segment( media, center, window, output ):
            Path( output ).write_bytes( b"RIFF" + b"\x00" * 64 );
            return output, max( 0.0, center - window / 2.0 );

        segments.extract_segment.side_effect = extract_segment;
        cloud = CloudSyncDetector(
            config,
            client=WhisperApiClient( config.cloud, client=api, sleep=Mock() ),
            segment_extractor=segments
        );

        extractor = AudioFeatureExtractor();
        extractor.extract = Mock( return_value=speech_audio( 1.5, 3.4 ) );
        vad = VadSyncDetector(
            config,
            extractor=extractor,
            vad_detector=LocalVadDetector( config.vad, classifier_factory=lambda c: LoudnessClassifier(), extractor=extractor )
        );

        engine = SyncEngine( config, vad_detector=vad, cloud_detector=cloud );
        subs = document( ( 1.0, 3.0 ) );
        result = engine.synchronize( tmp_path / "movie.mkv", subs );

        assert api.audio.transcriptions.create.call_count == 3;
        assert result.method_used == SyncMethod.LOCAL_VAD;
        assert result.diagnostics["fallback"]["from"] == "cloud";
        assert result.offset_seconds == pytest.approx( 0.5, abs=0.07 );
        assert result.diagnostics["state_trace"] == [
            "idle", "selecting_method", "detecting", "fallback", "selecting_method", "detecting", "scoring", "applying", "done"
        ];


    @patch( "subalign.audio.ffmpeg" )
    def test_missing_ffmpeg_binary_falls_back_to_vad( self, mock_ffmpeg, tmp_path ):
        media = tmp_path / "movie.mkv";
        media.write_bytes( b"fake" );
        mock_ffmpeg.Error = ffmpeg.Error;
        mock_ffmpeg.run.side_effect = FileNotFoundError( "ffmpeg" );

        config = SyncConfig(
            auto_detect_sample_rate=False,
            vad=VadConfig( padding_chunks=0 ),
            cloud=CloudConfig( api_key="sk-test" )
        );
        api = Mock();
        cloud = CloudSyncDetector(
            config,
            client=WhisperApiClient( config.cloud, client=api, sleep=Mock() ),
            segment_extractor=AudioSegmentExtractor()
        );

        extractor = AudioFeatureExtractor();
        extractor.extract = Mock( return_value=speech_audio( 1.5, 3.4 ) );
        vad = VadSyncDetector(
            config,
            extractor=extractor,
            vad_detector=LocalVadDetector( config.vad, classifier_factory=lambda c: LoudnessClassifier(), extractor=extractor )
        );

        result = SyncEngine( config, vad_detector=vad, cloud_detector=cloud ).detect_sync_offset( media, document( ( 1.0, 3.0 ) ) );

        api.audio.transcriptions.create.assert_not_called();
        assert result.method_used == SyncMethod.LOCAL_VAD;
        assert result.diagnostics["fallback"]["from"] == "cloud";
        assert "Could not run FFmpeg" in result.diagnostics["fallback"]["reason"];
        assert result.offset_seconds == pytest.approx( 0.5, abs=0.07 );


class TestBatch:
    """Pair discovery and per-pair isolation."""

    @staticmethod
    def make_pairs( directory: Path ):
        for stem in ( "good", "bad" ):
            ( directory / f"{stem}.mkv" ).write_bytes( b"\x00" );
            ( directory / f"{stem}.srt" ).write_text( SRT_TEXT, encoding="utf-8" );
        ( directory / "orphan.mp4" ).write_bytes( b"\x00" );
        ( directory / "notes.txt" ).write_text( "ignore me" );

    def test_discover_pairs( self, tmp_path ):
        self.make_pairs( tmp_path );
        pairs = discover_pairs( tmp_path );
        assert [ ( m.name, s.name ) for m, s in pairs ] == [ ( "bad.mkv", "bad.srt" ), ( "good.mkv", "good.srt" ) ];

    def test_one_failure_does_not_stop_the_batch( self, tmp_path ):
        self.make_pairs( tmp_path );

        def detect( media_file, subtitle ):
            if Path( media_file ).stem == "bad":
                raise AudioDecodeError( "no audio stream", media_file );
            return detected( 0.5, 0.9 );

        vad = Mock();
        vad.detect_sync_offset.side_effect = detect;
        engine = SyncEngine( SyncConfig(), vad_detector=vad, cloud_detector=Mock() );
        output = io.StringIO();
        batch = BatchSynchronizer(
            engine,
            method="vad",
            backup=BackupManager( tmp_path / "backup" ),
            console=Console( file=output, width=200 )
        );

        results = batch.run( discover_pairs( tmp_path ) );

        assert [ r.media_file.name for r in results ] == [ "bad.mkv", "good.mkv" ];
        assert not results[0].success;
        assert "no audio stream" in results[0].error;
        assert results[1].success;
        assert results[1].output_file == tmp_path / "good.synced.srt";
        assert load_subtitles( results[1].output_file ).spans()[0] == ( 1.5, 3.5 );
        assert "good.mkv" in output.getvalue();

    def test_dry_run_writes_nothing( self, tmp_path ):
        self.make_pairs( tmp_path );
        engine, vad, cloud = engine_with( vad_result=None );
        vad.detect_sync_offset.side_effect = lambda media, sub: detected( 0.5, 0.9 );
        batch = BatchSynchronizer( engine, method="vad", dry_run=True, console=Console( file=io.StringIO() ) );

        results = batch.run( discover_pairs( tmp_path ) );
        assert all( r.success and r.output_file is None for r in results );
        assert not list( tmp_path.glob( "*.synced.srt" ) );

    def test_output_dir( self, tmp_path ):
        batch = BatchSynchronizer( Mock(), output_dir=tmp_path / "out", console=Console( file=io.StringIO() ) );
        assert batch.output_path( Path( "/media/movie.srt" ) ) == tmp_path / "out" / "movie.synced.srt";
