"""
Cross-correlation of an audio energy envelope against a subtitle activity signal.
"""
import math
from typing import Optional, Tuple
import numpy as np

from .audio import EnergyEnvelope
from .config import SyncConfig
from .logging import get_logger
from .result import SyncMethod, SyncResult
from .subtitles import SubtitleDocument


ONSET_FRACTION = 0.5;   # Audio onset: first hop reaching this fraction of the peak energy


class CrossCorrelationEstimator:
    """
    Finds the lag that best aligns speech energy with subtitle timing.

    A positive lag means the audio trails the subtitles, so the subtitles must
    be delayed by ``lag * hop_seconds``.
    """

    def __init__( self, config: Optional[SyncConfig] = None, debug: bool = False ):
        self.config = config or SyncConfig();
        self.logger = get_logger( debug=debug );

    @staticmethod
    def subtitle_signal( subtitle: SubtitleDocument, hop_seconds: float, length: int ) -> np.ndarray:
        """1.0 for every hop whose start lies inside a cue's [start, end), else 0.0."""
        signal = np.zeros( length, dtype=np.float64 );
        if length == 0 or hop_seconds <= 0:
            return signal;

        times = np.arange( length ) * hop_seconds;
        for entry in subtitle.entries:
            signal[( times >= entry.start_time ) & ( times < entry.end_time )] = 1.0;
        return signal;

    @staticmethod
    def correlate( audio: np.ndarray, sub: np.ndarray, max_lag: int ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Normalized correlation for every lag in [-max_lag, max_lag].

        Each lag only uses the overlapping part of the two signals:
        sum(audio[i+k] * sub[i]) / sqrt(sum(audio[i+k]^2) * sum(sub[i]^2)).
        Lags with no overlap or no energy score 0.

        Returns:
            (lags, scores)
        """
        audio = np.asarray( audio, dtype=np.float64 );
        sub = np.asarray( sub, dtype=np.float64 );
        lags = np.arange( -max_lag, max_lag + 1 );
        scores = np.zeros( len( lags ), dtype=np.float64 );

        # Prefix sums of squares give each overlap's energy in O(1)
        audio_sq = np.concatenate( [ [0.0], np.cumsum( audio * audio ) ] );
        sub_sq = np.concatenate( [ [0.0], np.cumsum( sub * sub ) ] );

        for idx, k in enumerate( lags ):
            i_start = max( 0, -k );
            i_end = min( len( sub ), len( audio ) - k );
            if i_end <= i_start:
                continue;

            audio_energy = audio_sq[i_end + k] - audio_sq[i_start + k];
            sub_energy = sub_sq[i_end] - sub_sq[i_start];
            denominator = math.sqrt( max( audio_energy, 0.0 ) * max( sub_energy, 0.0 ) );
            if denominator <= 1e-12:
                continue;

            scores[idx] = np.dot( audio[i_start + k:i_end + k], sub[i_start:i_end] ) / denominator;

        return lags, scores;

    @staticmethod
    def _onset( signal: np.ndarray, fraction: float ) -> Optional[int]:
        if len( signal ) == 0:
            return None;
        peak = float( np.max( signal ) );
        if peak <= 0:
            return None;
        above = np.flatnonzero( signal >= fraction * peak );
        return int( above[0] ) if len( above ) else None;

    def _best_lag( self, lags: np.ndarray, scores: np.ndarray, audio: np.ndarray, sub: np.ndarray ) -> int:
        """Index of the winning lag; plateaus resolve toward onset alignment."""
        peak = scores.max();
        candidates = np.flatnonzero( np.isclose( scores, peak, rtol=1e-6, atol=1e-12 ) );
        if len( candidates ) == 1:
            return int( candidates[0] );

        audio_onset = self._onset( audio, ONSET_FRACTION );
        sub_onset = self._onset( sub, 1.0 );
        if audio_onset is None or sub_onset is None:
            return int( min( candidates, key=lambda c: abs( lags[c] ) ) );

        onset_lag = audio_onset - sub_onset;
        return int( min( candidates, key=lambda c: ( abs( lags[c] - onset_lag ), abs( lags[c] ) ) ) );

    def estimate( self, envelope: EnergyEnvelope, subtitle: SubtitleDocument ) -> SyncResult:
        """
        Estimate the subtitle offset from an energy envelope.

        Returns:
            SyncResult; confidence is the correlation peak when it reaches
            correlation_threshold and 0 otherwise
        """
        hop_seconds = envelope.hop_seconds;
        if len( envelope ) == 0 or hop_seconds <= 0 or not subtitle.entries:
            return SyncResult.no_signal( SyncMethod.LOCAL_VAD, "Nothing to correlate: empty envelope or subtitle track" );

        audio = np.asarray( envelope.samples, dtype=np.float64 );
        if not np.any( audio > 0 ):
            return SyncResult.no_signal( SyncMethod.LOCAL_VAD, "Audio envelope is silent" );

        length = max( len( audio ), int( math.ceil( subtitle.end_time / hop_seconds ) ) );
        sub = self.subtitle_signal( subtitle, hop_seconds, length );
        if not np.any( sub > 0 ):
            return SyncResult.no_signal( SyncMethod.LOCAL_VAD, "Subtitle activity signal is empty" );

        max_lag = int( math.ceil( self.config.max_offset_seconds / hop_seconds ) );
        lags, scores = self.correlate( audio, sub, max_lag );

        best = self._best_lag( lags, scores, audio, sub );
        lag = int( lags[best] );
        peak = float( scores[best] );
        offset = lag * hop_seconds;

        threshold = self.config.correlation_threshold;
        diagnostics = {
            "lag": lag,
            "hop_seconds": hop_seconds,
            "max_lag": max_lag,
            "correlation_threshold": threshold,
        };

        self.logger.debug( f"Correlation peak {peak:.3f} at lag {lag} ({offset:+.3f}s)" );

        warnings = [];
        confidence = peak;
        if peak < threshold:
            confidence = 0.0;
            warnings.append( f"Correlation peak {peak:.3f} below threshold {threshold:.2f}" );

        return SyncResult(
            offset_seconds=offset,
            confidence=confidence,
            method_used=SyncMethod.LOCAL_VAD,
            correlation_peak=peak,
            diagnostics=diagnostics,
            warnings=warnings
        );
