"""
Result Channel.

Many-producer / single-consumer conduit from workers to the coordinator,
built on a bounded multiprocessing.Queue. Each worker's messages arrive in
the order it sent them; messages from different workers interleave freely.
"""

import logging
import multiprocessing
import queue
from typing import Optional

from kmeans_optimizer.config import PUT_TIMEOUT, QUEUE_SIZE
from kmeans_optimizer.errors import ResourceError, TransportError
from kmeans_optimizer.models import MessageKind, ResultMessage

logger = logging.getLogger(__name__)


class ResultChannel:
    """
    Bounded result queue shared by the coordinator and its workers.

    A full queue blocks a sending worker for at most `put_timeout` seconds
    per attempt. The worker keeps retrying while the coordinator drains, and
    gives up only once the stop event is set.
    """

    def __init__(
        self,
        maxsize: int = QUEUE_SIZE,
        put_timeout: float = PUT_TIMEOUT,
        context: Optional[multiprocessing.context.BaseContext] = None,
    ):
        ctx = context or multiprocessing.get_context()
        try:
            self._queue = ctx.Queue(maxsize)
        except OSError as e:
            raise ResourceError(f"Error creating result channel: {e}") from e

        self.maxsize = maxsize
        self.put_timeout = put_timeout
        self._closed = False

    def send(self, message: ResultMessage, stop_event=None) -> bool:
        """
        Put a message on the channel.

        Args:
            message: Result envelope
            stop_event: multiprocessing.Event; checked each time the channel is full

        Returns:
            True if sent, False if the run stopped while the channel was full

        Raises:
            TransportError: channel closed or broken
        """
        while True:
            try:
                self._queue.put(message, block=True, timeout=self.put_timeout)
                return True
            except queue.Full:
                if stop_event is not None and stop_event.is_set():
                    return False
            except (OSError, ValueError, AssertionError) as e:
                raise TransportError(f"Error sending result from worker {message.worker_id}: {e}") from e

    def receive(self, timeout: Optional[float] = None) -> Optional[ResultMessage]:
        """
        Take the next message.

        Args:
            timeout: Seconds to wait (None = wait forever)

        Returns:
            ResultMessage, or None if nothing arrived within timeout

        Raises:
            TransportError: channel broken or unexpected message kind
        """
        try:
            message = self._queue.get(block=True, timeout=timeout)
        except queue.Empty:
            return None
        except (OSError, EOFError, ValueError) as e:
            raise TransportError(f"Error receiving result: {e}") from e

        if getattr(message, "kind", None) != MessageKind.RESULT:
            raise TransportError(f"Unexpected message on result channel: {message!r}")
        return message

    def drain(self) -> int:
        """Discard everything currently queued. Returns number discarded."""
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
                discarded += 1
            except queue.Empty:
                return discarded
            except (OSError, EOFError, ValueError) as e:
                raise TransportError(f"Error draining result channel: {e}") from e

    def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.close()
        self._queue.join_thread()
        logger.debug("Result channel closed")

    @property
    def closed(self) -> bool:
        return self._closed
