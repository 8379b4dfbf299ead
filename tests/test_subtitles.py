"""
Test cases for subtitle parsing, writing and shifting.
"""
import pytest
from pathlib import Path
import sys

# Add src directory to path for testing
sys.path.insert( 0, str( Path( __file__ ).parent.parent / "src" ) );

from subalign.errors import SubtitleError
from subalign.subtitles import (
    SubtitleDocument,
    SubtitleEntry,
    clean_subtitle_text,
    corrected_output_path,
    load_subtitles,
    save_subtitles,
    shift_entry,
    shift_subtitles,
)


SRT_TEXT = """1
00:00:01,000 --> 00:00:03,000
<i>Hello</i> there.

2
00:00:05,250 --> 00:00:06,500
[door slams]
JOHN: General Kenobi.
""";


@pytest.fixture
def srt_file( tmp_path ):
    path = tmp_path / "movie.srt";
    path.write_text( SRT_TEXT, encoding="utf-8" );
    return path;


class TestLoadSave:
    """pysrt-backed IO."""

    def test_load( self, srt_file ):
        document = load_subtitles( srt_file );

        assert len( document ) == 2;
        assert document.first_entry().start_time == 1.0;
        assert document.spans() == [ ( 1.0, 3.0 ), ( 5.25, 6.5 ) ];
        assert document.end_time == 6.5;
        assert document.source_path == srt_file;

    def test_save_preserves_text_and_times( self, srt_file, tmp_path ):
        document = load_subtitles( srt_file );
        shift_subtitles( document, 0.5 );
        output = save_subtitles( document, tmp_path / "out.srt" );

        reloaded = load_subtitles( output );
        assert reloaded.spans() == [ ( 1.5, 3.5 ), ( 5.75, 7.0 ) ];
        assert reloaded.entries[1].text == document.entries[1].text;

    def test_missing_file( self, tmp_path ):
        with pytest.raises( SubtitleError ):
            load_subtitles( tmp_path / "nope.srt" );

    def test_wrong_extension( self, tmp_path ):
        path = tmp_path / "movie.ass";
        path.write_text( "[Script Info]\n" );
        with pytest.raises( SubtitleError ):
            load_subtitles( path );

    def test_empty_file( self, tmp_path ):
        path = tmp_path / "empty.srt";
        path.write_text( "" );
        with pytest.raises( SubtitleError ):
            load_subtitles( path );

    def test_empty_document_has_no_first_entry( self ):
        with pytest.raises( SubtitleError ):
            SubtitleDocument().first_entry();


class TestShift:
    """Offset application."""

    def test_positive_offset_preserves_durations( self ):
        document = SubtitleDocument( entries=[ SubtitleEntry( 1, 0.0, 1.0, "a" ), SubtitleEntry( 2, 4.0, 6.5, "b" ) ] );
        count = shift_subtitles( document, 2.5 );

        assert count == 2;
        assert document.spans() == [ ( 2.5, 3.5 ), ( 6.5, 9.0 ) ];

    def test_negative_offset_clamps_at_zero( self ):
        entry = SubtitleEntry( 1, 1.0, 2.0, "a" );
        shift_entry( entry, -5.0 );
        assert ( entry.start_time, entry.end_time ) == ( 0.0, 0.0 );

    def test_partial_clamp_keeps_end_after_start( self ):
        entry = SubtitleEntry( 1, 1.0, 4.0, "a" );
        shift_entry( entry, -2.0 );
        assert ( entry.start_time, entry.end_time ) == ( 0.0, 2.0 );


class TestHelpers:

    def test_clean_subtitle_text( self ):
        assert clean_subtitle_text( "<i>Hello</i>  there..." ) == "hello there.";
        assert clean_subtitle_text( "[door slams]\nJOHN: General Kenobi." ) == "general kenobi.";
        assert clean_subtitle_text( "♪ (humming) ♪" ) == "";
        assert clean_subtitle_text( "" ) == "";

    def test_corrected_output_path( self ):
        assert corrected_output_path( Path( "/videos/movie.srt" ) ) == Path( "/videos/movie.synced.srt" );
