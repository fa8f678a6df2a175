"""Clock synchronization — server responder and client offset estimator.

The exchange is NTP-style and repeats every ``CLOCK_SYNC_INTERVAL_MS``:

    client → clock_sync_request{clientTime}
    server → clock_sync_response{clientTime, serverTime}

On receipt the client computes::

    rtt    = localReceiveTime - clientTime
    offset = serverTime - clientTime - rtt / 2

and smooths the offset over a small sliding window (median, so one slow
round trip cannot drag the estimate).  Server timestamps in later
messages (``playback_started.startTime`` etc.) are converted to local
time with ``to_local_time``.
"""
from __future__ import annotations

import math
import statistics
from collections import deque
from dataclasses import dataclass
from typing import Optional

from stepjam.core.clock import ServerClock
from stepjam.protocol.messages import ClockSyncRequest, ClockSyncResponse

CLOCK_SYNC_INTERVAL_MS: int = 5_000
SAMPLE_WINDOW: int = 5
RTT_HISTORY_SIZE: int = 20
MIN_SAMPLES_FOR_P95: int = 5


def respond_to_clock_sync(request: ClockSyncRequest, clock: ServerClock) -> ClockSyncResponse:
    """Echo the client's timestamp and stamp the server's."""
    return ClockSyncResponse(client_time=request.client_time, server_time=clock.now())


@dataclass(frozen=True)
class ClockSample:
    """One completed sync round trip, all values in milliseconds."""

    client_time: float
    server_time: float
    local_receive_time: float
    rtt: float
    offset: float


class ClockSyncEstimator:
    """Client-side estimate of the server clock offset."""

    def __init__(self, window: int = SAMPLE_WINDOW, rtt_history: int = RTT_HISTORY_SIZE) -> None:
        self._samples: deque[ClockSample] = deque(maxlen=window)
        self._rtt_history: deque[float] = deque(maxlen=rtt_history)
        self._offset: float = 0.0
        self._rtt: float = 0.0
        self._max_drift: float = 0.0
        self._sync_count: int = 0

    def record(self, response: ClockSyncResponse, local_receive_time: float) -> ClockSample:
        """Fold one ``clock_sync_response`` into the estimate."""
        rtt = local_receive_time - response.client_time
        offset = response.server_time - response.client_time - rtt / 2
        sample = ClockSample(
            client_time=response.client_time,
            server_time=response.server_time,
            local_receive_time=local_receive_time,
            rtt=rtt,
            offset=offset,
        )

        previous_offset = self._offset if self._sync_count else None

        self._samples.append(sample)
        self._rtt_history.append(rtt)
        self._offset = statistics.median(s.offset for s in self._samples)
        self._rtt = statistics.fmean(s.rtt for s in self._samples)
        self._sync_count += 1

        if previous_offset is not None:
            self._max_drift = max(self._max_drift, abs(self._offset - previous_offset))

        return sample

    @property
    def offset(self) -> float:
        """Estimated ``server_time - local_time`` in milliseconds."""
        return self._offset

    @property
    def rtt(self) -> float:
        """Mean round-trip time over the sample window."""
        return self._rtt

    @property
    def p95_rtt(self) -> Optional[float]:
        """Nearest-rank 95th percentile RTT, ``None`` until enough samples."""
        if len(self._rtt_history) < MIN_SAMPLES_FOR_P95:
            return None
        ordered = sorted(self._rtt_history)
        rank = math.ceil(0.95 * len(ordered)) - 1
        return ordered[rank]

    @property
    def max_drift(self) -> float:
        return self._max_drift

    @property
    def sync_count(self) -> int:
        return self._sync_count

    @property
    def is_synced(self) -> bool:
        return self._sync_count > 0

    def to_local_time(self, server_time: float) -> float:
        return server_time - self._offset

    def to_server_time(self, local_time: float) -> float:
        return local_time + self._offset

    def metrics(self) -> dict[str, object]:
        return {
            "offset": self._offset,
            "rtt": self._rtt,
            "p95Rtt": self.p95_rtt,
            "maxDrift": self._max_drift,
            "syncCount": self._sync_count,
        }
