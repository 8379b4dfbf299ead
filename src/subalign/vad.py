"""
Local voice activity detection and VAD-driven offset estimation.

Speech probabilities come from a pretrained classifier (Silero VAD). The
classifier is created per call through a factory, so no state is shared
between files or threads.
"""
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence
import numpy as np

from .audio import AudioFeatureExtractor, AudioSamples, EnergyEnvelope
from .config import SyncConfig, VadConfig
from .correlation import CrossCorrelationEstimator
from .dialogue import HeuristicDialogueDetector, merge_close_segments
from .logging import get_logger
from .resample import AudioResampler, AudioUseCase, SampleRateOptimizer
from .result import SyncMethod, SyncResult
from .subtitles import SubtitleDocument


SIGNIFICANT_SPEECH_SECONDS = 0.1;
SIGNIFICANT_SPEECH_PROBABILITY = 0.5;


class SpeechClassifier( Protocol ):
    """Anything that turns a chunk of 8/16kHz mono audio into a speech probability."""

    def reset( self ) -> None:
        ...

    def predict( self, chunk: np.ndarray ) -> float:
        ...


class SileroSpeechClassifier:
    """
    Silero VAD model behind the SpeechClassifier interface.

    The model scores fixed windows (512 samples at 16kHz, 256 at 8kHz); a chunk
    is split into windows and its probability is the mean over them.
    """

    def __init__( self, sample_rate: int = 16000 ):
        # Deferred so the heuristic path works without loading torch
        import torch
        from silero_vad import load_silero_vad

        self._torch = torch;
        self.model = load_silero_vad();
        self.sample_rate = sample_rate;
        self.window_size = 512 if sample_rate == 16000 else 256;

    def reset( self ):
        self.model.reset_states();

    def predict( self, chunk: np.ndarray ) -> float:
        data = np.asarray( chunk, dtype=np.float32 );
        remainder = len( data ) % self.window_size;
        if remainder or len( data ) == 0:
            data = np.concatenate( [ data, np.zeros( self.window_size - remainder, dtype=np.float32 ) ] );

        probabilities = [];
        with self._torch.no_grad():
            for start in range( 0, len( data ), self.window_size ):
                window = self._torch.from_numpy( np.ascontiguousarray( data[start:start + self.window_size] ) );
                probabilities.append( float( self.model( window, self.sample_rate ).item() ) );
        return sum( probabilities ) / len( probabilities );


def default_classifier_factory( config: VadConfig ) -> SpeechClassifier:
    return SileroSpeechClassifier( sample_rate=config.sample_rate );


@dataclass
class SpeechSegment:
    """Speech region found by the classifier. Confidence is the mean speech probability."""

    start_time: float;
    end_time: float;
    confidence: float;

    @property
    def duration( self ) -> float:
        return self.end_time - self.start_time;

    @property
    def probability( self ) -> float:
        return self.confidence;


@dataclass
class AudioInfo:
    sample_rate: int;
    channels: int;
    duration: float;
    total_samples: int;


@dataclass
class VadResult:
    segments: List[SpeechSegment] = field( default_factory=list );
    processing_duration: float = 0.0;
    audio_info: Optional[AudioInfo] = None;


def calculate_confidence( vad_result: VadResult, max_confidence: float = 0.95 ) -> float:
    """
    Confidence of a VAD pass, from how much and how clearly speech was found.

    Starts at 0.6 and adds 0.1 for any speech, 0.1 for three or more segments,
    0.1 when the first segment lasts 0.5s (0.05 more at 1s) and 0.05 when the
    first segment's probability is at least 0.8.
    """
    segments = vad_result.segments;
    if not segments:
        return 0.0;

    confidence = 0.6 + 0.1;
    if len( segments ) >= 3:
        confidence += 0.1;

    first = segments[0];
    if first.duration >= 0.5:
        confidence += 0.1;
    if first.duration >= 1.0:
        confidence += 0.05;
    if first.probability >= 0.8:
        confidence += 0.05;

    return min( confidence, max_confidence );


class LocalVadDetector:
    """Runs a speech classifier over fixed-size chunks and turns the labels into segments."""

    def __init__( self,
                  config: Optional[VadConfig] = None,
                  classifier_factory: Optional[Callable[[VadConfig], SpeechClassifier]] = None,
                  extractor: Optional[AudioFeatureExtractor] = None,
                  resampler: Optional[AudioResampler] = None,
                  debug: bool = False ):
        self.config = config or VadConfig();
        self.classifier_factory = classifier_factory or default_classifier_factory;
        self.extractor = extractor or AudioFeatureExtractor( debug=debug );
        self.resampler = resampler or AudioResampler( "high" );
        self.logger = get_logger( debug=debug );

    def detect_speech( self, media_file: Path, max_duration: Optional[float] = None ) -> VadResult:
        """Decode a media file and detect speech in it."""
        return self.detect_samples( self.extractor.extract( media_file, max_duration=max_duration ) );

    def detect_samples( self, audio: AudioSamples ) -> VadResult:
        started = time.time();
        config = self.config;

        info = AudioInfo(
            sample_rate=audio.sample_rate,
            channels=audio.channels,
            duration=audio.duration,
            total_samples=audio.total_samples
        );

        if audio.sample_rate != config.sample_rate:
            audio = self.resampler.resample_audio( audio, config.sample_rate );

        classifier = self.classifier_factory( config );
        classifier.reset();

        data = np.asarray( audio.samples, dtype=np.float32 );
        chunk_size = config.chunk_size;
        probabilities = [];
        for start in range( 0, len( data ), chunk_size ):
            chunk = data[start:start + chunk_size];
            if len( chunk ) < chunk_size:
                chunk = np.concatenate( [ chunk, np.zeros( chunk_size - len( chunk ), dtype=np.float32 ) ] );
            probabilities.append( float( classifier.predict( chunk ) ) );

        segments = self.segments_from_probabilities(
            probabilities,
            chunk_size / float( config.sample_rate ),
            audio.duration
        );

        elapsed = time.time() - started;
        self.logger.debug( f"VAD: {len( segments )} speech segments from {len( probabilities )} chunks in {elapsed:.2f}s" );
        return VadResult( segments=segments, processing_duration=elapsed, audio_info=info );

    def segments_from_probabilities( self, probabilities: Sequence[float], chunk_seconds: float, total_duration: float ) -> List[SpeechSegment]:
        """
        Label chunks, pad speech runs and build merged segments.

        A chunk is speech when its probability reaches 1 - sensitivity;
        padding_chunks neighbours on each side of a speech chunk are labeled
        speech too. Runs shorter than min_speech_duration_ms are dropped and
        runs closer than speech_merge_gap_ms are merged.
        """
        config = self.config;
        probs = np.asarray( probabilities, dtype=np.float64 );
        if len( probs ) == 0:
            return [];

        above = probs >= config.threshold;
        labels = above.copy();
        pad = config.padding_chunks;
        for idx in np.flatnonzero( above ):
            labels[max( 0, idx - pad ):idx + pad + 1] = True;

        segments = [];
        idx = 0;
        while idx < len( labels ):
            if not labels[idx]:
                idx += 1;
                continue;
            run_start = idx;
            while idx < len( labels ) and labels[idx]:
                idx += 1;

            start = run_start * chunk_seconds;
            end = min( total_duration, idx * chunk_seconds ) if total_duration > 0 else idx * chunk_seconds;
            if end <= start:
                continue;

            speech_probs = probs[run_start:idx][above[run_start:idx]];
            segments.append( SpeechSegment( start, end, float( speech_probs.mean() ) ) );

        min_duration = config.min_speech_duration_ms / 1000.0;
        segments = [ s for s in segments if s.duration >= min_duration ];
        return merge_close_segments( segments, config.speech_merge_gap_ms / 1000.0 );

    def calculate_confidence( self, vad_result: VadResult ) -> float:
        return calculate_confidence( vad_result, self.config.max_confidence );


class VadSyncDetector:
    """
    Offset estimation from local speech detection.

    The energy envelope is gated by the detected speech segments and
    cross-correlated with the subtitle activity signal. When the correlation
    is not conclusive, the first significant speech onset is compared with the
    first subtitle instead.
    """

    def __init__( self,
                  config: Optional[SyncConfig] = None,
                  extractor: Optional[AudioFeatureExtractor] = None,
                  vad_detector: Optional[LocalVadDetector] = None,
                  dialogue_detector: Optional[HeuristicDialogueDetector] = None,
                  estimator: Optional[CrossCorrelationEstimator] = None,
                  optimizer: Optional[SampleRateOptimizer] = None,
                  debug: bool = False ):
        self.config = config or SyncConfig();
        self.extractor = extractor or AudioFeatureExtractor( debug=debug );
        self.vad_detector = vad_detector or LocalVadDetector(
            self.config.vad,
            extractor=self.extractor,
            resampler=AudioResampler( self.config.resample_quality ),
            debug=debug
        );
        self.dialogue_detector = dialogue_detector or HeuristicDialogueDetector( self.config, extractor=self.extractor, debug=debug );
        self.estimator = estimator or CrossCorrelationEstimator( self.config, debug=debug );
        self.optimizer = optimizer or SampleRateOptimizer( AudioResampler( self.config.resample_quality ), debug=debug );
        self.logger = get_logger( debug=debug );

    def detect_sync_offset( self, media_file: Path, subtitle: SubtitleDocument ) -> SyncResult:
        """
        Decode the media up to the last cue plus the maximum offset and estimate the offset.

        Raises:
            AudioDecodeError: if the media cannot be decoded
            SubtitleError: if the subtitle document is empty
        """
        subtitle.first_entry();
        limit = subtitle.end_time + self.config.max_offset_seconds;
        audio = self.extractor.extract( media_file, max_duration=limit );
        return self.detect_from_samples( audio, subtitle );

    def _speech_segments( self, audio: AudioSamples, analysis_audio: AudioSamples ) -> VadResult:
        if self.config.vad.enabled:
            return self.vad_detector.detect_samples( audio );

        started = time.time();
        dialogue = self.dialogue_detector.detect( analysis_audio );
        return VadResult(
            segments=[ SpeechSegment( d.start_time, d.end_time, d.confidence ) for d in dialogue ],
            processing_duration=time.time() - started,
            audio_info=AudioInfo( audio.sample_rate, audio.channels, audio.duration, audio.total_samples )
        );

    @staticmethod
    def gate_envelope( envelope: EnergyEnvelope, segments: Sequence[SpeechSegment] ) -> EnergyEnvelope:
        """Zero every hop that does not start inside a speech segment."""
        times = np.arange( len( envelope ) ) * envelope.hop_seconds;
        mask = np.zeros( len( envelope ), dtype=bool );
        for segment in segments:
            mask |= ( times >= segment.start_time ) & ( times < segment.end_time );
        return EnergyEnvelope(
            samples=np.where( mask, envelope.samples, 0.0 ).astype( np.float32 ),
            sample_rate=envelope.sample_rate,
            duration=envelope.duration,
            hop_size=envelope.hop_size
        );

    @staticmethod
    def first_significant_speech( segments: Sequence[SpeechSegment] ) -> SpeechSegment:
        for segment in segments:
            if segment.duration >= SIGNIFICANT_SPEECH_SECONDS and segment.probability >= SIGNIFICANT_SPEECH_PROBABILITY:
                return segment;
        return segments[0];

    def detect_from_samples( self, audio: AudioSamples, subtitle: SubtitleDocument ) -> SyncResult:
        started = time.time();
        first_entry = subtitle.first_entry();
        diagnostics = {
            "source_sample_rate": audio.sample_rate,
            "segment_source": "classifier" if self.config.vad.enabled else "heuristic",
        };

        analysis_audio = audio;
        if self.config.auto_detect_sample_rate:
            auto = self.optimizer.auto_optimize( audio );
            diagnostics["content_type"] = auto.optimization_result.analysis.content_type.value;
            diagnostics["inferred_use_case"] = auto.inferred_use_case.value;
            analysis_audio = self.optimizer.prepare( audio, self.optimizer.rate_for( AudioUseCase.SYNC_MATCHING, audio.sample_rate ) );
        diagnostics["analysis_sample_rate"] = analysis_audio.sample_rate;

        vad_result = self._speech_segments( audio, analysis_audio );
        segments = vad_result.segments;
        if not segments:
            result = SyncResult.no_signal( SyncMethod.LOCAL_VAD, "No speech detected in audio", **diagnostics );
            result.processing_duration = time.time() - started;
            return result;

        vad_confidence = calculate_confidence( vad_result, self.config.vad.max_confidence );
        diagnostics["speech_segments"] = len( segments );
        diagnostics["speech_ratio"] = HeuristicDialogueDetector.speech_ratio( segments, audio.duration );
        diagnostics["vad_confidence"] = vad_confidence;

        envelope = self.gate_envelope( self.extractor.envelope( analysis_audio ), segments );
        correlation = self.estimator.estimate( envelope, subtitle );
        diagnostics["correlation"] = correlation.diagnostics;

        warnings = [];
        if correlation.confidence > 0:
            diagnostics["strategy"] = "correlation";
            offset = correlation.offset_seconds;
            confidence = min( vad_confidence, correlation.correlation_peak );
        else:
            speech = self.first_significant_speech( segments );
            diagnostics["strategy"] = "onset";
            diagnostics["first_speech_time"] = speech.start_time;
            diagnostics["expected_subtitle_start"] = first_entry.start_time;
            offset = speech.start_time - first_entry.start_time;
            confidence = vad_confidence;
            warnings.extend( correlation.warnings );
            warnings.append( "Correlation inconclusive; offset taken from the first speech onset" );

        self.logger.debug( f"VAD sync: offset {offset:+.3f}s via {diagnostics['strategy']}, confidence {confidence:.2f}" );
        return SyncResult(
            offset_seconds=offset,
            confidence=confidence,
            method_used=SyncMethod.LOCAL_VAD,
            correlation_peak=correlation.correlation_peak,
            diagnostics=diagnostics,
            processing_duration=time.time() - started,
            warnings=warnings
        );
