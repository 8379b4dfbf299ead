"""
Sample-rate conversion and use-case driven rate selection.
"""
from dataclasses import dataclass
from enum import Enum
from math import gcd
from typing import Optional
import numpy as np
from scipy.interpolate import CubicSpline
from scipy.signal import firwin, resample_poly

from .audio import AudioSamples, rms, zero_crossing_rate
from .logging import get_logger


SYNC_RATE_TIERS = ( 22050, 32000, 44100, 48000 );
ENERGY_WINDOW = 1024;
CENTROID_WINDOW = 2048;
CENTROID_BLOCK_WINDOWS = 1024;       # Centroid windows per FFT batch


class ResampleQuality( Enum ):
    """Interpolation tiers, cheapest first."""

    LOW = "low";          # Linear
    MEDIUM = "medium";    # Cubic spline
    HIGH = "high";        # Windowed sinc, 8 zero crossings
    BEST = "best";        # Windowed sinc, 16 zero crossings

    @property
    def zero_crossings( self ) -> int:
        return { ResampleQuality.HIGH: 8, ResampleQuality.BEST: 16 }.get( self, 0 );


class AudioUseCase( Enum ):
    SPEECH_RECOGNITION = "speech_recognition";
    MUSIC_ANALYSIS = "music_analysis";
    SYNC_MATCHING = "sync_matching";


class AudioContentType( Enum ):
    SPEECH = "speech";
    MUSIC = "music";
    MIXED = "mixed";


class AudioResampler:
    """
    Converts mono PCM between sample rates.

    Output always has round(n * target / source) samples, so duration is
    preserved whatever the quality tier.
    """

    def __init__( self, quality="high" ):
        self.quality = quality if isinstance( quality, ResampleQuality ) else ResampleQuality( quality );

    def resample( self, samples: np.ndarray, source_rate: int, target_rate: int ) -> np.ndarray:
        data = np.asarray( samples, dtype=np.float64 );
        if source_rate == target_rate or len( data ) == 0:
            return data.astype( np.float32 );

        out_len = int( round( len( data ) * target_rate / float( source_rate ) ) );
        if out_len == 0:
            return np.zeros( 0, dtype=np.float32 );

        if self.quality in ( ResampleQuality.LOW, ResampleQuality.MEDIUM ) or len( data ) < 4:
            out = self._interpolate( data, source_rate, target_rate, out_len );
        else:
            out = self._sinc( data, source_rate, target_rate );

        return self._fit_length( out, out_len ).astype( np.float32 );

    def _interpolate( self, data: np.ndarray, source_rate: int, target_rate: int, out_len: int ) -> np.ndarray:
        positions = np.arange( out_len ) * ( source_rate / float( target_rate ) );
        positions = np.minimum( positions, len( data ) - 1 );
        grid = np.arange( len( data ) );

        if self.quality == ResampleQuality.MEDIUM and len( data ) >= 4:
            return CubicSpline( grid, data )( positions );
        return np.interp( positions, grid, data );

    def _sinc( self, data: np.ndarray, source_rate: int, target_rate: int ) -> np.ndarray:
        divisor = gcd( int( source_rate ), int( target_rate ) );
        up = int( target_rate ) // divisor;
        down = int( source_rate ) // divisor;
        max_rate = max( up, down );

        half_len = self.quality.zero_crossings * max_rate;
        beta = 8.6 if self.quality == ResampleQuality.BEST else 5.0;
        taps = firwin( 2 * half_len + 1, 1.0 / max_rate, window=( "kaiser", beta ) );
        return resample_poly( data, up, down, window=taps );

    @staticmethod
    def _fit_length( out: np.ndarray, out_len: int ) -> np.ndarray:
        if len( out ) >= out_len:
            return out[:out_len];
        return np.concatenate( [ out, np.zeros( out_len - len( out ) ) ] );

    def resample_audio( self, audio: AudioSamples, target_rate: int ) -> AudioSamples:
        data = self.resample( audio.samples, audio.sample_rate, target_rate );
        return AudioSamples(
            samples=data,
            sample_rate=target_rate,
            channels=audio.channels,
            duration=len( data ) / float( target_rate )
        );


@dataclass
class AudioAnalysis:
    content_type: AudioContentType;
    spectral_centroid: float;
    zero_crossing_rate: float;
    energy_variance: float;
    content_confidence: float;


@dataclass
class OptimizationSuggestion:
    current_rate: int;
    recommended_rate: int;
    reason: str;


@dataclass
class OptimizationResult:
    current_sample_rate: int;
    optimization: Optional[OptimizationSuggestion];   # None when the rate is already optimal
    analysis: AudioAnalysis;

    @property
    def is_optimal( self ) -> bool:
        return self.optimization is None;


@dataclass
class AutoOptimizationResult:
    inferred_use_case: AudioUseCase;
    optimization_result: OptimizationResult;
    confidence: float;

    @property
    def optimization( self ) -> Optional[OptimizationSuggestion]:
        return self.optimization_result.optimization;


class SampleRateOptimizer:
    """
    Picks a working sample rate from the content of the audio.

    Speech: centroid below 2kHz and zero-crossing rate below 0.1.
    Music: energy variance above 0.5. Anything else is mixed.
    """

    def __init__( self, resampler: Optional[AudioResampler] = None, debug: bool = False ):
        self.resampler = resampler or AudioResampler();
        self.logger = get_logger( debug=debug );

    @staticmethod
    def rate_for( use_case: AudioUseCase, source_rate: Optional[int] = None ) -> int:
        """Recommended rate; sync matching keeps the largest tier not above the source."""
        if use_case == AudioUseCase.SPEECH_RECOGNITION:
            return 16000;
        if use_case == AudioUseCase.MUSIC_ANALYSIS:
            return 44100;
        if not source_rate:
            return SYNC_RATE_TIERS[0];
        eligible = [ tier for tier in SYNC_RATE_TIERS if tier <= source_rate ];
        return max( eligible ) if eligible else SYNC_RATE_TIERS[0];

    @staticmethod
    def _spectral_centroid( samples: np.ndarray, sample_rate: int ) -> float:
        """Mean centroid over non-overlapping Hanning windows that carry energy."""
        data = np.asarray( samples );
        count = len( data ) // CENTROID_WINDOW;
        if count == 0:
            if len( data ) == 0:
                return 0.0;
            data = np.concatenate( [ data, np.zeros( CENTROID_WINDOW - len( data ), dtype=data.dtype ) ] );
            count = 1;

        window = np.hanning( CENTROID_WINDOW );
        freqs = np.fft.rfftfreq( CENTROID_WINDOW, d=1.0 / sample_rate );
        step = CENTROID_BLOCK_WINDOWS * CENTROID_WINDOW;

        centroid_sum = 0.0;
        voiced_count = 0;
        for begin in range( 0, count * CENTROID_WINDOW, step ):
            end = min( begin + step, count * CENTROID_WINDOW );
            blocks = np.asarray( data[begin:end], dtype=np.float64 ).reshape( -1, CENTROID_WINDOW ) * window;
            spectrum = np.abs( np.fft.rfft( blocks, axis=1 ) );
            totals = spectrum.sum( axis=1 );
            voiced = totals > 0;
            if np.any( voiced ):
                centroid_sum += float( np.sum( ( spectrum[voiced] @ freqs ) / totals[voiced] ) );
                voiced_count += int( np.count_nonzero( voiced ) );

        if voiced_count == 0:
            return 0.0;
        return centroid_sum / voiced_count;

    @staticmethod
    def _energy_variance( samples: np.ndarray ) -> float:
        """Standard deviation of mean-square energy over 1024-sample windows."""
        data = np.asarray( samples );
        energies = [ rms( data[i:i + ENERGY_WINDOW] ) ** 2 for i in range( 0, len( data ), ENERGY_WINDOW ) ];
        if len( energies ) < 2:
            return 0.0;
        return float( np.std( energies ) );

    @staticmethod
    def _content_confidence( centroid: float, zcr: float, variance: float ) -> float:
        features = ( centroid / 5000.0, zcr * 10.0, variance );
        spread = sum( abs( x - 0.5 ) for x in features ) / len( features );
        return min( 1.0, max( 0.0, 1.0 - spread ) );

    def analyze( self, audio: AudioSamples ) -> AudioAnalysis:
        centroid = self._spectral_centroid( audio.samples, audio.sample_rate );
        zcr = zero_crossing_rate( audio.samples );
        variance = self._energy_variance( audio.samples );

        if centroid < 2000.0 and zcr < 0.1:
            content = AudioContentType.SPEECH;
        elif variance > 0.5:
            content = AudioContentType.MUSIC;
        else:
            content = AudioContentType.MIXED;

        self.logger.debug( f"Content analysis: {content.value} (centroid={centroid:.0f}Hz, zcr={zcr:.3f}, variance={variance:.3f})" );
        return AudioAnalysis(
            content_type=content,
            spectral_centroid=centroid,
            zero_crossing_rate=zcr,
            energy_variance=variance,
            content_confidence=self._content_confidence( centroid, zcr, variance )
        );

    @staticmethod
    def infer_use_case( analysis: AudioAnalysis ) -> AudioUseCase:
        return {
            AudioContentType.SPEECH: AudioUseCase.SPEECH_RECOGNITION,
            AudioContentType.MUSIC: AudioUseCase.MUSIC_ANALYSIS,
            AudioContentType.MIXED: AudioUseCase.SYNC_MATCHING,
        }[analysis.content_type];

    def optimize_for_use_case( self, audio: AudioSamples, use_case: AudioUseCase, analysis: Optional[AudioAnalysis] = None ) -> OptimizationResult:
        current = audio.sample_rate;
        recommended = self.rate_for( use_case, current );

        suggestion = None;
        if recommended != current:
            direction = "Lowering" if recommended < current else "Raising";
            suggestion = OptimizationSuggestion(
                current_rate=current,
                recommended_rate=recommended,
                reason=f"{direction} {current}Hz to {recommended}Hz for {use_case.value.replace( '_', ' ' )}"
            );

        return OptimizationResult(
            current_sample_rate=current,
            optimization=suggestion,
            analysis=analysis or self.analyze( audio )
        );

    def auto_optimize( self, audio: AudioSamples ) -> AutoOptimizationResult:
        analysis = self.analyze( audio );
        use_case = self.infer_use_case( analysis );
        return AutoOptimizationResult(
            inferred_use_case=use_case,
            optimization_result=self.optimize_for_use_case( audio, use_case, analysis ),
            confidence=analysis.content_confidence
        );

    def prepare( self, audio: AudioSamples, target_rate: int ) -> AudioSamples:
        """Resample to target_rate, or return the input untouched if it is already there."""
        if audio.sample_rate == target_rate:
            return audio;
        self.logger.debug( f"Resampling {audio.sample_rate}Hz -> {target_rate}Hz ({self.resampler.quality.value})" );
        return self.resampler.resample_audio( audio, target_rate );
