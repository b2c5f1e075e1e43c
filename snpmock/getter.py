"""
Queued fake HTTPS getter

Each URL has a queue of prepared responses. Calls always serve the front
of the queue; a response is dropped once it has been served its configured
number of times.
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class GetResponse:
    """A prepared response and how many times it should be served"""
    occurrences: float = 1  # math.inf for "always"
    body: Optional[bytes] = None
    error: Optional[Exception] = None


@dataclass
class Getter:
    """Fake HTTPS getter returning prepared responses in order per URL"""
    responses: Dict[str, Deque[GetResponse]] = field(default_factory=dict)

    def __post_init__(self):
        # each queue slot gets its own use counter
        self.responses = {
            url: deque(replace(resp) for resp in queue)
            for url, queue in self.responses.items()
        }

    def add(self, url: str, *responses: GetResponse) -> None:
        """Queue more responses for ``url``"""
        self.responses.setdefault(url, deque()).extend(replace(resp) for resp in responses)

    def get(self, url: str) -> Tuple[Optional[bytes], Optional[Exception]]:
        """Next (body, error) for ``url``.

        The error is returned even when a body is set; callers treat a
        non-None error as failure.
        """
        queue = self.responses.get(url)
        if not queue:
            logger.debug("No prepared response for %s", url)
            return None, NotFoundError(url)
        resp = queue[0]
        resp.occurrences -= 1
        if resp.occurrences == 0:
            queue.popleft()
        logger.debug("Served %s (%s left in front entry)", url, resp.occurrences)
        return resp.body, resp.error

    async def get_async(self, url: str) -> Tuple[Optional[bytes], Optional[Exception]]:
        """Same as get(), raising CancelledError if the calling task is cancelled.

        Yields to the event loop once before touching the queue; a cancel
        requested before or during that yield leaves the queue as it was.
        """
        await asyncio.sleep(0)
        return self.get(url)

    def done(self, errorf: Optional[Callable[[str], None]] = None) -> List[str]:
        """Check every prepared response was consumed.

        ``errorf`` is called once per URL with leftovers; without it an
        AssertionError naming all of them is raised.
        """
        failures = [
            f"Prepared response for '{url}' not retrieved."
            for url, queue in self.responses.items() if queue
        ]
        if errorf is not None:
            for failure in failures:
                errorf(failure)
        elif failures:
            raise AssertionError("\n".join(failures))
        return failures


def simple_getter(responses: Dict[str, bytes]) -> Getter:
    """Static server from url -> body. For more elaborate tests build a Getter."""
    return Getter({
        url: [GetResponse(occurrences=math.inf, body=body)]
        for url, body in responses.items()
    })
