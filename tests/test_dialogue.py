"""
Test cases for the heuristic dialogue detector.
"""
import pytest
from pathlib import Path
import sys
import numpy as np

# Add src directory to path for testing
sys.path.insert( 0, str( Path( __file__ ).parent.parent / "src" ) );

from subalign.audio import AudioSamples, FrameFeatures
from subalign.config import SyncConfig
from subalign.dialogue import DialogueSegment, HeuristicDialogueDetector, merge_close_segments


RATE = 16000;


def bursts( spans, seconds: float, freq: float = 1000.0 ) -> AudioSamples:
    """Tone bursts over silence."""
    t = np.arange( int( seconds * RATE ) ) / float( RATE );
    data = np.zeros( len( t ), dtype=np.float32 );
    for start, end in spans:
        mask = ( t >= start ) & ( t < end );
        data[mask] = 0.4 * np.sin( 2 * np.pi * freq * t[mask] );
    return AudioSamples.from_array( data, RATE );


class TestFrameClassification:
    """Two-of-three rule."""

    def test_two_checks_are_enough( self ):
        detector = HeuristicDialogueDetector( SyncConfig() );
        frame = FrameFeatures( time=0.0, energy=0.02, spectral_centroid=5000.0, spectral_entropy=0.7, zero_crossing_rate=0.1 );

        is_dialogue, ratio = detector.classify_frame( frame );
        assert is_dialogue;
        assert ratio == pytest.approx( 2 / 3.0 );

    def test_one_check_is_not( self ):
        detector = HeuristicDialogueDetector( SyncConfig() );
        frame = FrameFeatures( time=0.0, energy=0.5, spectral_centroid=100.0, spectral_entropy=0.1, zero_crossing_rate=0.0 );

        is_dialogue, ratio = detector.classify_frame( frame );
        assert not is_dialogue;
        assert ratio == pytest.approx( 1 / 3.0 );

    def test_thresholds_come_from_config( self ):
        detector = HeuristicDialogueDetector( SyncConfig( energy_threshold=0.1 ) );
        frame = FrameFeatures( time=0.0, energy=0.05, spectral_centroid=1000.0, spectral_entropy=0.2, zero_crossing_rate=0.0 );
        assert not detector.classify_frame( frame )[0];


class TestDetect:
    """Segments from synthetic audio."""

    def test_segments_are_merged_filtered_and_ordered( self ):
        audio = bursts( [ ( 1.0, 2.0 ), ( 2.1, 3.0 ), ( 4.0, 4.2 ), ( 5.0, 6.5 ) ], 8.0 );
        segments = HeuristicDialogueDetector( SyncConfig() ).detect( audio );

        assert len( segments ) == 2;
        assert segments[0].start_time == pytest.approx( 1.0, abs=0.1 );
        assert segments[0].end_time == pytest.approx( 3.0, abs=0.1 );
        assert segments[1].start_time == pytest.approx( 5.0, abs=0.1 );
        assert segments[1].end_time == pytest.approx( 6.5, abs=0.1 );

        for segment in segments:
            assert segment.end_time > segment.start_time;
            assert 0.0 < segment.confidence <= 1.0;
        for earlier, later in zip( segments, segments[1:] ):
            assert earlier.end_time <= later.start_time;

    def test_silence_has_no_dialogue( self ):
        audio = AudioSamples.from_array( np.zeros( RATE * 2 ), RATE );
        assert HeuristicDialogueDetector().detect( audio ) == [];

    def test_speech_until_end_of_audio( self ):
        audio = bursts( [ ( 1.0, 3.0 ) ], 3.0 );
        segments = HeuristicDialogueDetector().detect( audio );

        assert len( segments ) == 1;
        assert segments[0].end_time <= audio.duration + 1e-9;


class TestHelpers:
    """Merging and coverage helpers."""

    def test_merge_keeps_max_confidence( self ):
        merged = merge_close_segments( [
            DialogueSegment( 0.0, 1.0, 0.6 ),
            DialogueSegment( 1.1, 2.0, 0.9 ),
            DialogueSegment( 3.0, 4.0, 0.7 ),
        ], 0.2 );

        assert len( merged ) == 2;
        assert ( merged[0].start_time, merged[0].end_time, merged[0].confidence ) == ( 0.0, 2.0, 0.9 );
        assert merged[1].start_time == 3.0;

    def test_speech_ratio( self ):
        segments = [ DialogueSegment( 0.0, 1.0, 1.0 ), DialogueSegment( 2.0, 4.0, 1.0 ) ];
        assert HeuristicDialogueDetector.speech_ratio( segments, 10.0 ) == pytest.approx( 0.3 );
        assert HeuristicDialogueDetector.speech_ratio( segments, 0.0 ) == 0.0;
