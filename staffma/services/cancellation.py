"""
Staffma Payroll - Cancellation Token

Cooperative cancellation for payroll operations. A token is created by the
caller, threaded through every core operation and checked at each
suspension point. Remote calls are raced against the token so that a
cancel aborts the in-flight HTTP request instead of waiting for it.
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from staffma.utils.error_handling import OperationCancelledException

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Signal shared between the caller and a running operation."""
    
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
    
    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
    
    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Idempotent."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason or 'no reason given'}")
    
    def raise_if_cancelled(self, operation: str, partial_result: Any = None) -> None:
        if self._event.is_set():
            raise OperationCancelledException(operation, self.reason, partial_result)
    
    async def run(self, awaitable: Awaitable[T], operation: str) -> T:
        """
        Await `awaitable` unless the token is cancelled first.
        
        On cancellation the underlying task is cancelled (aborting any
        request it has in flight) and OperationCancelledException is raised.
        """
        self.raise_if_cancelled(operation)
        
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.create_task(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        
        if work.done():
            return work.result()
        
        work.cancel()
        await asyncio.wait({work})
        logger.info(f"{operation}: in-flight request aborted")
        raise OperationCancelledException(operation, self.reason)
