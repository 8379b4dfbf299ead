"""
Test cases for the bounded retry state machine.
"""
import pytest
from pathlib import Path
from unittest.mock import Mock
import sys

# Add src directory to path for testing
sys.path.insert( 0, str( Path( __file__ ).parent.parent / "src" ) );

from subalign.retry import RetryExhausted, RetryState, RetryStateMachine


class TestRetryStateMachine:
    """Transitions without any transport."""

    def test_success_on_first_attempt( self ):
        sleep = Mock();
        machine = RetryStateMachine( max_retries=3, sleep=sleep );

        assert machine.run( lambda: "ok" ) == "ok";
        assert machine.attempt == 1;
        assert machine.history == [ RetryState.ATTEMPT, RetryState.SUCCESS ];
        sleep.assert_not_called();

    def test_retries_with_fixed_delay_then_succeeds( self ):
        sleep = Mock();
        operation = Mock( side_effect=[ ConnectionError( "reset" ), TimeoutError( "slow" ), "done" ] );
        machine = RetryStateMachine( max_retries=3, delay_seconds=0.25, sleep=sleep );

        assert machine.run( operation ) == "done";
        assert operation.call_count == 3;
        assert [ c.args[0] for c in sleep.call_args_list ] == [ 0.25, 0.25 ];
        assert machine.state == RetryState.SUCCESS;
        assert machine.history.count( RetryState.RETRYABLE_FAILURE ) == 2;

    def test_exhaustion_raises_with_attempt_count( self ):
        sleep = Mock();
        error = ConnectionError( "down" );
        machine = RetryStateMachine( max_retries=2, delay_seconds=1.0, sleep=sleep );

        with pytest.raises( RetryExhausted ) as excinfo:
            machine.run( Mock( side_effect=error ) );

        assert excinfo.value.attempts == 3;
        assert excinfo.value.last_error is error;
        assert sleep.call_count == 2;
        assert machine.history[-1] == RetryState.TERMINAL_FAILURE;

    def test_zero_retries_means_one_attempt( self ):
        operation = Mock( side_effect=ConnectionError( "down" ) );
        with pytest.raises( RetryExhausted ):
            RetryStateMachine( max_retries=0, sleep=Mock() ).run( operation );
        assert operation.call_count == 1;

    def test_non_retryable_error_is_terminal_immediately( self ):
        sleep = Mock();
        operation = Mock( side_effect=ValueError( "bad payload" ) );
        machine = RetryStateMachine( max_retries=5, sleep=sleep );

        with pytest.raises( ValueError ):
            machine.run( operation );

        assert operation.call_count == 1;
        assert machine.history == [ RetryState.ATTEMPT, RetryState.TERMINAL_FAILURE ];
        sleep.assert_not_called();

    def test_custom_retryable_types( self ):
        class Flaky( Exception ):
            pass

        operation = Mock( side_effect=[ Flaky(), 42 ] );
        machine = RetryStateMachine( max_retries=1, retryable=( Flaky, ), sleep=Mock() );
        assert machine.run( operation ) == 42;
