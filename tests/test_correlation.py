"""
Test cases for the cross-correlation offset estimator.
"""
import pytest
from pathlib import Path
import sys
import numpy as np

# Add src directory to path for testing
sys.path.insert( 0, str( Path( __file__ ).parent.parent / "src" ) );

from subalign.audio import EnergyEnvelope
from subalign.config import SyncConfig
from subalign.correlation import CrossCorrelationEstimator
from subalign.result import SyncMethod
from subalign.subtitles import SubtitleDocument, SubtitleEntry


HOP = 0.01;   # 160 samples at 16kHz


def make_envelope( values ) -> EnergyEnvelope:
    values = np.asarray( values, dtype=np.float32 );
    return EnergyEnvelope( samples=values, sample_rate=16000, duration=len( values ) * HOP, hop_size=160 );


def make_document( spans ) -> SubtitleDocument:
    return SubtitleDocument( entries=[
        SubtitleEntry( index=i + 1, start_time=start, end_time=end, text=f"line {i + 1}" )
        for i, ( start, end ) in enumerate( spans )
    ] );


def speech_envelope( spans, seconds: float ) -> EnergyEnvelope:
    times = np.arange( int( round( seconds / HOP ) ) ) * HOP;
    values = np.zeros( len( times ) );
    for start, end in spans:
        values[( times >= start ) & ( times < end )] = 1.0;
    return make_envelope( values );


class TestSubtitleSignal:
    """Binary activity signal built from cues."""

    def test_marks_hops_inside_cues( self ):
        document = make_document( [ ( 0.015, 0.045 ) ] );
        signal = CrossCorrelationEstimator.subtitle_signal( document, HOP, 8 );
        assert list( signal ) == [ 0, 0, 1, 1, 1, 0, 0, 0 ];

    def test_empty_length( self ):
        signal = CrossCorrelationEstimator.subtitle_signal( make_document( [ ( 0.0, 1.0 ) ] ), HOP, 0 );
        assert len( signal ) == 0;


class TestCorrelate:
    """Normalized correlation over the overlap."""

    def test_identical_signals_peak_at_zero_lag( self ):
        signal = np.array( [ 0, 1, 1, 0, 0, 1, 0, 0 ], dtype=float );
        lags, scores = CrossCorrelationEstimator.correlate( signal, signal, 3 );

        assert list( lags ) == [ -3, -2, -1, 0, 1, 2, 3 ];
        assert scores[3] == pytest.approx( 1.0 );
        assert scores.max() == pytest.approx( 1.0 );

    def test_positive_lag_means_audio_trails( self ):
        sub = np.array( [ 0, 1, 1, 0, 0, 0, 0, 0 ], dtype=float );
        audio = np.array( [ 0, 0, 0, 1, 1, 0, 0, 0 ], dtype=float );
        lags, scores = CrossCorrelationEstimator.correlate( audio, sub, 4 );

        assert lags[int( np.argmax( scores ) )] == 2;

    def test_silent_audio_scores_zero( self ):
        lags, scores = CrossCorrelationEstimator.correlate( np.zeros( 10 ), np.ones( 10 ), 2 );
        assert np.all( scores == 0.0 );

    def test_unequal_lengths_are_tolerated( self ):
        lags, scores = CrossCorrelationEstimator.correlate( np.ones( 5 ), np.ones( 12 ), 20 );
        assert len( lags ) == 41;
        assert np.all( ( scores >= 0.0 ) & ( scores <= 1.0 + 1e-9 ) );


class TestEstimate:
    """Offset estimation end to end on synthetic envelopes."""

    def test_scenario_speech_half_second_late( self ):
        """Cue [1.0, 3.0), speech energy [1.5, 3.4): offset +0.5s."""
        estimator = CrossCorrelationEstimator( SyncConfig() );
        result = estimator.estimate( speech_envelope( [ ( 1.5, 3.4 ) ], 10.0 ), make_document( [ ( 1.0, 3.0 ) ] ) );

        assert result.offset_seconds == pytest.approx( 0.5, abs=HOP );
        assert result.confidence > 0.0;
        assert result.method_used == SyncMethod.LOCAL_VAD;
        assert result.correlation_peak == pytest.approx( np.sqrt( 190.0 / 200.0 ), abs=1e-3 );

    @pytest.mark.parametrize( "lag_seconds", [ 2.37, -1.5, 0.0, 0.73 ] )
    def test_recovers_injected_lag( self, lag_seconds ):
        cues = [ ( 3.0, 5.0 ), ( 7.0, 8.5 ), ( 11.0, 14.0 ), ( 16.0, 17.0 ) ];
        speech = [ ( start + lag_seconds, end + lag_seconds ) for start, end in cues ];

        estimator = CrossCorrelationEstimator( SyncConfig( max_offset_seconds=5.0 ) );
        result = estimator.estimate( speech_envelope( speech, 25.0 ), make_document( cues ) );

        assert abs( result.offset_seconds - lag_seconds ) <= HOP + 1e-9;
        assert result.confidence >= SyncConfig().correlation_threshold;

    def test_flat_audio_is_below_threshold( self ):
        estimator = CrossCorrelationEstimator( SyncConfig( max_offset_seconds=1.0 ) );
        result = estimator.estimate( make_envelope( np.ones( 1000 ) ), make_document( [ ( 1.0, 3.0 ) ] ) );

        assert result.confidence == 0.0;
        assert 0.0 < result.correlation_peak < 0.8;
        assert result.warnings;

    def test_silent_envelope_has_no_signal( self ):
        estimator = CrossCorrelationEstimator();
        result = estimator.estimate( make_envelope( np.zeros( 500 ) ), make_document( [ ( 1.0, 2.0 ) ] ) );

        assert result.confidence == 0.0;
        assert result.offset_seconds == 0.0;
        assert "reason" in result.diagnostics;

    def test_empty_subtitles_have_no_signal( self ):
        estimator = CrossCorrelationEstimator();
        result = estimator.estimate( make_envelope( np.ones( 100 ) ), SubtitleDocument() );
        assert not result.has_signal;
