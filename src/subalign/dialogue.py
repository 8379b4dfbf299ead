"""
Heuristic dialogue detection from energy and spectral shape.

Used to infer content type and as the segment source when no speech
classifier is configured.
"""
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .audio import AudioFeatureExtractor, AudioSamples, FrameFeatures
from .config import SyncConfig
from .logging import get_logger


@dataclass
class DialogueSegment:
    """Stretch of audio judged to contain dialogue."""

    start_time: float;
    end_time: float;
    confidence: float;

    @property
    def duration( self ) -> float:
        return self.end_time - self.start_time;


def merge_close_segments( segments: Sequence, max_gap: float ) -> List:
    """
    Merge segments whose gap is below max_gap.

    Works on any dataclass with start_time/end_time/confidence. Input must be
    sorted by start time; merged segments keep the highest confidence.
    """
    merged = [];
    for segment in segments:
        if merged and segment.start_time - merged[-1].end_time < max_gap:
            last = merged[-1];
            merged[-1] = replace(
                last,
                end_time=max( last.end_time, segment.end_time ),
                confidence=max( last.confidence, segment.confidence )
            );
        else:
            merged.append( segment );
    return merged;


class HeuristicDialogueDetector:
    """
    Frame-level dialogue classifier.

    A frame counts as dialogue when at least two of three checks pass:
    RMS energy above the energy threshold, spectral centroid inside the
    voice band, normalized spectral entropy above the entropy threshold.
    """

    REQUIRED_CHECKS = 2;

    def __init__( self, config: Optional[SyncConfig] = None, extractor: Optional[AudioFeatureExtractor] = None, debug: bool = False ):
        self.config = config or SyncConfig();
        self.extractor = extractor or AudioFeatureExtractor( debug=debug );
        self.logger = get_logger( debug=debug );

    def classify_frame( self, frame: FrameFeatures ) -> Tuple[bool, float]:
        """Returns (is_dialogue, fraction of checks passed)."""
        config = self.config;
        checks = (
            frame.energy > config.energy_threshold,
            config.spectral_centroid_min_hz <= frame.spectral_centroid <= config.spectral_centroid_max_hz,
            frame.spectral_entropy > config.spectral_entropy_threshold,
        );
        passed = sum( checks );
        return passed >= self.REQUIRED_CHECKS, passed / float( len( checks ) );

    def detect( self, audio: AudioSamples ) -> List[DialogueSegment]:
        """
        Find dialogue segments in decoded audio.

        Returns:
            Ascending, non-overlapping segments of at least min_dialogue_duration_ms
        """
        frames = self.extractor.spectral_features( audio );
        if not frames:
            return [];

        frame_seconds = self.extractor.hop_size / float( audio.sample_rate );
        segments = [];
        run_start = None;
        run_scores = [];

        for frame in frames:
            is_dialogue, score = self.classify_frame( frame );
            if is_dialogue:
                if run_start is None:
                    run_start = frame.time;
                    run_scores = [];
                run_scores.append( score );
            elif run_start is not None:
                segments.append( self._close_run( run_start, frame.time, run_scores ) );
                run_start = None;

        if run_start is not None:
            end = min( audio.duration, frames[-1].time + frame_seconds );
            segments.append( self._close_run( run_start, end, run_scores ) );

        segments = [ s for s in segments if s.end_time > s.start_time ];
        segments = merge_close_segments( segments, self.config.dialogue_merge_gap_ms / 1000.0 );

        min_duration = self.config.min_dialogue_duration_ms / 1000.0;
        kept = [ s for s in segments if s.duration >= min_duration ];

        self.logger.debug( f"Heuristic detector: {len( kept )} dialogue segments "
                           f"({len( segments ) - len( kept )} dropped as too short)" );
        return kept;

    @staticmethod
    def _close_run( start: float, end: float, scores: List[float] ) -> DialogueSegment:
        return DialogueSegment(
            start_time=start,
            end_time=end,
            confidence=sum( scores ) / len( scores )
        );

    def detect_file( self, media_file: Path ) -> List[DialogueSegment]:
        """Decode a media file and detect dialogue in it."""
        return self.detect( self.extractor.extract( media_file ) );

    @staticmethod
    def speech_ratio( segments: Sequence[DialogueSegment], total_duration: float ) -> float:
        """Fraction of total_duration covered by segments."""
        if total_duration <= 0:
            return 0.0;
        covered = sum( s.duration for s in segments );
        return min( 1.0, covered / total_duration );
