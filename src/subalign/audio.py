"""
Audio decoding and feature extraction.

Decodes media through FFmpeg into mono float32 PCM and derives the signals the
detectors work on: an RMS energy envelope and per-frame spectral features.
Also cuts and transcodes short windows for the cloud transcription path.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple
import ffmpeg
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .errors import AudioDecodeError
from .logging import get_logger


DEFAULT_HOP_SIZE = 512;
DEFAULT_WINDOW_SIZE = 1024;
FEATURE_BLOCK_FRAMES = 4096;     # Frames analysed per FFT batch


@dataclass
class AudioSamples:
    """Decoded mono PCM of one input."""

    samples: np.ndarray;      # float32, mono, roughly -1.0..1.0
    sample_rate: int;
    channels: int;            # Channel count of the source before down-mix
    duration: float;          # Seconds

    @classmethod
    def from_array( cls, samples, sample_rate: int, channels: int = 1 ) -> "AudioSamples":
        """Wrap an array; interleaved multi-channel input is down-mixed first."""
        data = np.asarray( samples, dtype=np.float32 );
        if channels > 1:
            data = downmix( data, channels );
        return cls(
            samples=data,
            sample_rate=int( sample_rate ),
            channels=channels,
            duration=len( data ) / float( sample_rate ) if sample_rate else 0.0
        );

    @property
    def total_samples( self ) -> int:
        return len( self.samples );

    def __repr__( self ):
        return f"AudioSamples(rate={self.sample_rate}Hz, channels={self.channels}, duration={self.duration:.2f}s)";


@dataclass
class EnergyEnvelope:
    """Per-hop RMS energy. Read-only once built."""

    samples: np.ndarray;
    sample_rate: int;                 # Rate of the audio the envelope was taken from
    duration: float;
    hop_size: Optional[int] = None;   # Samples per hop, when known

    @property
    def hop_seconds( self ) -> float:
        if self.hop_size:
            return self.hop_size / float( self.sample_rate );
        if len( self.samples ) == 0:
            return 0.0;
        return self.duration / len( self.samples );

    def __len__( self ):
        return len( self.samples );


@dataclass
class FrameFeatures:
    """Spectral description of one analysis frame."""

    time: float;                  # Frame start in seconds
    energy: float;                # RMS of the frame
    spectral_centroid: float;     # Hz
    spectral_entropy: float;      # Normalized to 0..1
    zero_crossing_rate: float;    # Sign changes per sample


def downmix( interleaved: np.ndarray, channels: int ) -> np.ndarray:
    """Average interleaved channels into one, sample by sample."""
    data = np.asarray( interleaved, dtype=np.float32 );
    if channels <= 1:
        return data;
    usable = len( data ) - ( len( data ) % channels );
    return data[:usable].reshape( -1, channels ).mean( axis=1 ).astype( np.float32 );


def rms( samples: np.ndarray ) -> float:
    if len( samples ) == 0:
        return 0.0;
    data = np.asarray( samples, dtype=np.float64 );
    return float( np.sqrt( np.mean( data * data ) ) );


def zero_crossing_rate( samples: np.ndarray ) -> float:
    """Fraction of adjacent sample pairs whose sign differs."""
    if len( samples ) < 2:
        return 0.0;
    signs = np.asarray( samples ) >= 0.0;
    return float( np.count_nonzero( signs[1:] != signs[:-1] ) ) / len( samples );


class AudioFeatureExtractor:
    """
    Decodes media and computes analysis features.

    Features:
    - FFprobe stream inspection, first audio track only
    - FFmpeg pipe decode to float32, averaged down to mono
    - RMS energy envelope (hop 512)
    - Hanning-windowed FFT features: centroid, entropy, zero-crossing rate
    """

    def __init__( self, hop_size: int = DEFAULT_HOP_SIZE, window_size: int = DEFAULT_WINDOW_SIZE, debug: bool = False ):
        self.logger = get_logger( debug=debug );
        self.hop_size = hop_size;
        self.window_size = window_size;

    def probe( self, media_file: Path ) -> dict:
        """
        Inspect the first audio stream of a media file.

        Returns:
            Dict with sample_rate, channels, duration and codec

        Raises:
            AudioDecodeError: missing file, unreadable container or no audio track
        """
        media_file = Path( media_file );
        if not media_file.exists():
            raise AudioDecodeError( f"Media file not found: {media_file}", path=media_file );

        try:
            probe = ffmpeg.probe( str( media_file ) );
        except ffmpeg.Error as e:
            stderr = e.stderr.decode( errors="replace" ) if e.stderr else str( e );
            raise AudioDecodeError( f"Could not read container {media_file}: {stderr.strip()}", path=media_file ) from e;
        except OSError as e:
            raise AudioDecodeError( f"Could not run ffprobe on {media_file}: {e}", path=media_file ) from e;

        audio_streams = [ s for s in probe.get( "streams", [] ) if s.get( "codec_type" ) == "audio" ];
        if not audio_streams:
            raise AudioDecodeError( f"No audio track in {media_file}", path=media_file );

        stream = audio_streams[0];
        sample_rate = int( stream.get( "sample_rate" ) or 0 );
        if sample_rate <= 0:
            raise AudioDecodeError( f"Audio track of {media_file} reports no sample rate", path=media_file );

        duration = stream.get( "duration" ) or probe.get( "format", {} ).get( "duration" ) or 0.0;
        info = {
            "sample_rate": sample_rate,
            "channels": int( stream.get( "channels" ) or 1 ),
            "duration": float( duration ),
            "codec": stream.get( "codec_name", "unknown" )
        };
        self.logger.debug( f"Probed {media_file.name}: {info}" );
        return info;

    def extract( self, media_file: Path, max_duration: Optional[float] = None ) -> AudioSamples:
        """
        Decode the first audio track to mono float32.

        Args:
            media_file: Video or audio file
            max_duration: Only decode this many seconds from the start

        Returns:
            AudioSamples at the source sample rate

        Raises:
            AudioDecodeError: if nothing can be decoded
        """
        media_file = Path( media_file );
        info = self.probe( media_file );
        channels = info["channels"];

        input_kwargs = {};
        if max_duration:
            input_kwargs["t"] = max_duration;

        try:
            out, _ = (
                ffmpeg
                .input( str( media_file ), **input_kwargs )
                .output( "pipe:", format="f32le", acodec="pcm_f32le", map="0:a:0", ac=channels )
                .run( capture_stdout=True, capture_stderr=True )
            );
        except ffmpeg.Error as e:
            stderr = e.stderr.decode( errors="replace" ) if e.stderr else str( e );
            raise AudioDecodeError( f"Failed to decode audio ({info['codec']}) from {media_file}: {stderr.strip()}", path=media_file ) from e;
        except OSError as e:
            raise AudioDecodeError( f"Could not run FFmpeg on {media_file}: {e}", path=media_file ) from e;

        interleaved = np.frombuffer( out, dtype=np.float32 );
        if interleaved.size == 0:
            raise AudioDecodeError( f"Decoder produced no samples for {media_file}", path=media_file );

        audio = AudioSamples.from_array( interleaved, info["sample_rate"], channels );
        self.logger.debug( f"Decoded {media_file.name}: {audio}" );
        return audio;

    def envelope( self, audio: AudioSamples ) -> EnergyEnvelope:
        """RMS energy of each hop; the trailing partial hop uses its own length."""
        data = audio.samples;
        hop = self.hop_size;
        full_hops = len( data ) // hop;
        step = FEATURE_BLOCK_FRAMES * hop;

        energies = [];
        for begin in range( 0, full_hops * hop, step ):
            end = min( begin + step, full_hops * hop );
            blocks = np.asarray( data[begin:end], dtype=np.float64 ).reshape( -1, hop );
            energies.append( np.sqrt( np.mean( blocks * blocks, axis=1 ) ) );
        remainder = data[full_hops * hop:];
        if len( remainder ):
            energies.append( np.array( [ rms( remainder ) ] ) );

        values = np.concatenate( energies ).astype( np.float32 ) if energies else np.zeros( 0, dtype=np.float32 );
        return EnergyEnvelope(
            samples=values,
            sample_rate=audio.sample_rate,
            duration=audio.duration,
            hop_size=hop
        );

    def frame_blocks( self, samples: np.ndarray, block_frames: int = FEATURE_BLOCK_FRAMES ) -> Iterator[Tuple[int, np.ndarray, np.ndarray]]:
        """
        Yield analysis frames a block at a time.

        Frames start every hop and the last ones are zero padded. Only one
        block is held as float64 at any time, so long media does not need a
        frame matrix for the whole file.

        Yields:
            (index of the first frame, frame matrix, unpadded length of each frame)
        """
        window = self.window_size;
        hop = self.hop_size;
        total = len( samples );
        frame_count = ( total + hop - 1 ) // hop;

        for first in range( 0, frame_count, block_frames ):
            count = min( block_frames, frame_count - first );
            begin = first * hop;
            end = begin + ( count - 1 ) * hop + window;

            segment = np.asarray( samples[begin:end], dtype=np.float64 );
            if len( segment ) < end - begin:
                segment = np.concatenate( [ segment, np.zeros( end - begin - len( segment ) ) ] );

            frames = sliding_window_view( segment, window )[::hop];
            starts = begin + np.arange( count ) * hop;
            lengths = np.minimum( window, total - starts );
            yield first, frames, lengths;

    def spectral_features( self, audio: AudioSamples ) -> List[FrameFeatures]:
        """
        Per-frame spectral features from a Hanning-windowed FFT.

        Entropy is computed over the normalized power spectrum and divided by
        log(bins) so it falls in 0..1. Silent frames report zeros.
        """
        window = np.hanning( self.window_size );
        freqs = np.fft.rfftfreq( self.window_size, d=1.0 / audio.sample_rate );
        log_bins = np.log( len( freqs ) );

        features = [];
        for first, frames, lengths in self.frame_blocks( audio.samples ):
            spectrum = np.abs( np.fft.rfft( frames * window, axis=1 ) );
            magnitude_sum = spectrum.sum( axis=1 );
            power = spectrum * spectrum;
            power_sum = power.sum( axis=1 );

            for i in range( len( frames ) ):
                frame = frames[i, :lengths[i]];

                if magnitude_sum[i] > 0:
                    centroid = float( np.dot( freqs, spectrum[i] ) / magnitude_sum[i] );
                else:
                    centroid = 0.0;

                if power_sum[i] > 0:
                    p = power[i] / power_sum[i];
                    p = p[p > 0];
                    entropy = float( -np.sum( p * np.log( p ) ) / log_bins );
                else:
                    entropy = 0.0;

                features.append( FrameFeatures(
                    time=( first + i ) * self.hop_size / float( audio.sample_rate ),
                    energy=rms( frame ),
                    spectral_centroid=centroid,
                    spectral_entropy=entropy,
                    zero_crossing_rate=zero_crossing_rate( frame )
                ) );

        return features;


class AudioSegmentExtractor:
    """
    Cuts and transcodes short audio windows for the transcription service.

    Output format is 16kHz mono 16-bit PCM WAV.
    """

    def __init__( self, sample_rate: int = 16000, debug: bool = False ):
        self.logger = get_logger( debug=debug );
        self.sample_rate = sample_rate;
        self.channels = 1;

    @staticmethod
    def window_bounds( center_time: float, window_seconds: float ) -> Tuple[float, float]:
        """Window of window_seconds centered on center_time, clipped at zero."""
        half = window_seconds / 2.0;
        start = max( 0.0, center_time - half );
        return start, center_time + half;

    def _speech_filter_chain( self ) -> str:
        """
        Filters that make dialogue easier to transcribe without moving it in time.

        1. High-pass at 80Hz removes rumble
        2. Loudness normalization to -16 LUFS
        3. FFT denoise for steady background noise
        """
        filters = [
            'highpass=f=80',
            'loudnorm=I=-16:LRA=11:TP=-2',
            'afftdn=nr=12:nf=-25'
        ];
        return ','.join( filters );

    def _run( self, stream, output_file: Path, source: Path ) -> Path:
        try:
            ffmpeg.run( stream, overwrite_output=True, quiet=True );
        except ffmpeg.Error as e:
            stderr = e.stderr.decode( errors="replace" ) if e.stderr else str( e );
            raise AudioDecodeError( f"FFmpeg failed on {source}: {stderr.strip()}", path=source ) from e;
        except OSError as e:
            raise AudioDecodeError( f"Could not run FFmpeg on {source}: {e}", path=source ) from e;

        if not output_file.exists() or output_file.stat().st_size <= 44:  # WAV header only
            raise AudioDecodeError( f"No audio extracted from {source}", path=source );
        return output_file;

    def extract_segment( self, media_file: Path, center_time: float, window_seconds: float, output_file: Path ) -> Tuple[Path, float]:
        """
        Extract a window of audio centered on a timestamp.

        Args:
            media_file: Input video/audio
            center_time: Window center in seconds
            window_seconds: Window length
            output_file: Where to write the WAV

        Returns:
            (path written, window start time in seconds)
        """
        media_file = Path( media_file );
        output_file = Path( output_file );
        if not media_file.exists():
            raise AudioDecodeError( f"Media file not found: {media_file}", path=media_file );

        start, end = self.window_bounds( center_time, window_seconds );
        self.logger.debug( f"Extracting {start:.2f}s-{end:.2f}s from {media_file.name} to {output_file}" );

        stream = ffmpeg.input( str( media_file ), ss=start, t=end - start );
        stream = ffmpeg.output(
            stream,
            str( output_file ),
            acodec='pcm_s16le',
            ar=self.sample_rate,
            ac=self.channels,
            f='wav'
        );
        return self._run( stream, output_file, media_file ), start;

    def prepare_for_transcription( self, input_file: Path, output_file: Path, enhance: bool = False ) -> Path:
        """Transcode to the service format, optionally through the speech filter chain."""
        input_file = Path( input_file );
        output_file = Path( output_file );

        output_kwargs = {
            "acodec": 'pcm_s16le',
            "ar": self.sample_rate,
            "ac": self.channels,
            "f": 'wav'
        };
        if enhance:
            output_kwargs["af"] = self._speech_filter_chain();
            self.logger.debug( f"Audio preprocessing chain: {output_kwargs['af']}" );

        stream = ffmpeg.output( ffmpeg.input( str( input_file ) ), str( output_file ), **output_kwargs );
        return self._run( stream, output_file, input_file );
