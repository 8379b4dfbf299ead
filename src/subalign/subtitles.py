"""
In-memory subtitle document, SRT loading/saving and timestamp shifting.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
import pysrt

from .errors import SubtitleError
from .logging import get_logger


@dataclass
class SubtitleEntry:
    """A single cue. Times are in seconds."""

    index: int;
    start_time: float;
    end_time: float;
    text: str;

    @property
    def duration( self ) -> float:
        return self.end_time - self.start_time;

    def __repr__( self ):
        return f"SubtitleEntry(index={self.index}, start={self.start_time:.3f}s, " \
               f"end={self.end_time:.3f}s, text='{self.text[:30]}')";


@dataclass
class SubtitleDocument:
    """Ordered list of cues plus the file it came from, if any."""

    entries: List[SubtitleEntry] = field( default_factory=list );
    source_path: Optional[Path] = None;

    def __len__( self ):
        return len( self.entries );

    def first_entry( self ) -> SubtitleEntry:
        if not self.entries:
            raise SubtitleError( "No subtitle entries found" );
        return self.entries[0];

    def spans( self ) -> List[Tuple[float, float]]:
        """(start, end) of every cue."""
        return [ ( entry.start_time, entry.end_time ) for entry in self.entries ];

    @property
    def end_time( self ) -> float:
        return max( ( entry.end_time for entry in self.entries ), default=0.0 );


def clean_subtitle_text( text: str ) -> str:
    """
    Strip markup and sound descriptions so cue text can be compared with a transcript.

    Removes HTML/WebVTT tags, [bracketed] and (parenthesized) descriptions,
    speaker labels, music symbols and repeated punctuation, then lowercases.
    """
    if not text:
        return "";

    text = re.sub( r'<[^>]+>', '', text );
    text = re.sub( r'\{\\[^}]*\}', '', text );        # ASS override tags that leak into SRT
    text = re.sub( r'\[([^\]]+)\]', '', text );
    text = re.sub( r'\(([^)]+)\)', '', text );
    text = re.sub( r'^[A-Z][A-Z\s]*:', '', text, flags=re.MULTILINE );
    text = re.sub( r'[♪♫★►▼→←↑↓]', '', text );
    text = re.sub( r'[.]{2,}', '.', text );
    text = re.sub( r'[-]{2,}', '-', text );
    text = re.sub( r'\s+', ' ', text );

    return text.strip().lower();


def _to_seconds( subrip_time ) -> float:
    return subrip_time.ordinal / 1000.0;


def _to_subrip_time( seconds: float ):
    return pysrt.SubRipTime.from_ordinal( int( round( max( 0.0, seconds ) * 1000 ) ) );


def load_subtitles( subtitle_file: Path, encoding: Optional[str] = None ) -> SubtitleDocument:
    """
    Parse an SRT file into a SubtitleDocument.

    Args:
        subtitle_file: Path to the .srt file
        encoding: Explicit encoding; pysrt auto-detects when omitted

    Returns:
        SubtitleDocument with cues in file order

    Raises:
        SubtitleError: if the file is missing, unreadable or has no cues
    """
    logger = get_logger();
    subtitle_file = Path( subtitle_file );

    if not subtitle_file.exists():
        raise SubtitleError( f"Subtitle file not found: {subtitle_file}" );

    if subtitle_file.suffix.lower() != ".srt":
        raise SubtitleError( f"Only .srt subtitle files are supported, got: {subtitle_file.suffix}" );

    try:
        subs = pysrt.open( str( subtitle_file ), encoding=encoding );
    except ( UnicodeDecodeError, OSError ) as e:
        raise SubtitleError( f"Failed to read subtitle file {subtitle_file}: {e}" ) from e;

    entries = [
        SubtitleEntry(
            index=sub.index,
            start_time=_to_seconds( sub.start ),
            end_time=_to_seconds( sub.end ),
            text=sub.text
        )
        for sub in subs
    ];

    if not entries:
        raise SubtitleError( f"No subtitle entries found in {subtitle_file}" );

    logger.debug( f"Parsed {len( entries )} subtitle entries from {subtitle_file}" );
    return SubtitleDocument( entries=entries, source_path=subtitle_file );


def save_subtitles( document: SubtitleDocument, output_file: Path ) -> Path:
    """Write the document as UTF-8 SRT and return the path written."""
    subs = pysrt.SubRipFile();
    for position, entry in enumerate( document.entries, 1 ):
        subs.append( pysrt.SubRipItem(
            index=entry.index if entry.index else position,
            start=_to_subrip_time( entry.start_time ),
            end=_to_subrip_time( entry.end_time ),
            text=entry.text
        ) );

    output_file = Path( output_file );
    try:
        subs.save( str( output_file ), encoding="utf-8" );
    except OSError as e:
        raise SubtitleError( f"Failed to write subtitle file {output_file}: {e}" ) from e;

    get_logger().info( f"Saved subtitles: {output_file}" );
    return output_file;


def shift_entry( entry: SubtitleEntry, offset_seconds: float ):
    """
    Shift one cue in place.

    Negative results clamp to zero; the end is reduced by the same shift and
    never lands before the start.
    """
    new_start = max( 0.0, entry.start_time + offset_seconds );
    new_end = max( 0.0, entry.end_time + offset_seconds );
    entry.start_time = new_start;
    entry.end_time = max( new_start, new_end );


def shift_subtitles( document: SubtitleDocument, offset_seconds: float ) -> int:
    """
    Shift every cue of the document in place.

    Returns:
        Number of entries modified
    """
    for entry in document.entries:
        shift_entry( entry, offset_seconds );
    return len( document.entries );


def corrected_output_path( subtitle_file: Path ) -> Path:
    """Default output name: movie.srt -> movie.synced.srt"""
    subtitle_file = Path( subtitle_file );
    return subtitle_file.parent / f"{subtitle_file.stem}.synced{subtitle_file.suffix}";
