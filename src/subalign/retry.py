"""
Bounded retry as an explicit state machine.

    Attempt(n) -> Success
               -> RetryableFailure -> Attempt(n + 1)    while n < max_attempts
               -> TerminalFailure

The machine knows nothing about transport; callers classify exceptions and
the sleep function is injectable, so it is testable without a network.
"""
import time
from enum import Enum
from typing import Callable, List, Optional, Tuple, Type

from .logging import get_logger


class RetryState( Enum ):
    ATTEMPT = "attempt";
    SUCCESS = "success";
    RETRYABLE_FAILURE = "retryable_failure";
    TERMINAL_FAILURE = "terminal_failure";


class RetryExhausted( Exception ):
    """All attempts failed. ``last_error`` holds the final exception."""

    def __init__( self, attempts: int, last_error: BaseException ):
        super().__init__( f"Gave up after {attempts} attempt(s): {last_error}" );
        self.attempts = attempts;
        self.last_error = last_error;


class RetryStateMachine:
    """
    Runs an operation up to ``max_retries + 1`` times with a fixed delay.

    Args:
        max_retries: Extra attempts after the first one
        delay_seconds: Fixed wait between attempts
        retryable: Exception types that move to RetryableFailure; anything
            else is terminal and re-raised immediately
        sleep: Wait function, time.sleep by default
    """

    def __init__( self,
                  max_retries: int = 3,
                  delay_seconds: float = 1.0,
                  retryable: Tuple[Type[BaseException], ...] = ( ConnectionError, TimeoutError ),
                  sleep: Callable[[float], None] = time.sleep ):
        self.max_attempts = max_retries + 1;
        self.delay_seconds = delay_seconds;
        self.retryable = retryable;
        self.sleep = sleep;
        self.logger = get_logger();

        self.state: Optional[RetryState] = None;
        self.attempt = 0;
        self.history: List[RetryState] = [];

    def _enter( self, state: RetryState ):
        self.state = state;
        self.history.append( state );

    def run( self, operation: Callable[[], object] ):
        """
        Execute operation until it succeeds or retries run out.

        Raises:
            RetryExhausted: when every attempt hit a retryable failure
            Exception: a non-retryable exception, unchanged
        """
        self.attempt = 0;
        self.history = [];

        while True:
            self.attempt += 1;
            self._enter( RetryState.ATTEMPT );
            try:
                value = operation();
            except self.retryable as e:
                self._enter( RetryState.RETRYABLE_FAILURE );
                if self.attempt >= self.max_attempts:
                    self._enter( RetryState.TERMINAL_FAILURE );
                    raise RetryExhausted( self.attempt, e ) from e;

                self.logger.warning( f"Attempt {self.attempt}/{self.max_attempts} failed, retrying in {self.delay_seconds:.1f}s: {e}" );
                self.sleep( self.delay_seconds );
                continue;
            except Exception:
                self._enter( RetryState.TERMINAL_FAILURE );
                raise;

            self._enter( RetryState.SUCCESS );
            return value;
