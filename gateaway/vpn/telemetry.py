"""Connection attempt history and per-server reliability scores."""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..logging_utility import logger


@dataclass(frozen=True)
class ConnectionAttempt:
    server_id: str
    success: bool
    connection_time: Optional[float] = None
    retry_count: int = 0
    failure_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ServerStats:
    total_attempts: int
    success_count: int
    failure_count: int
    avg_connection_time: float
    reliability_score: float

    @property
    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.success_count / self.total_attempts


def reliability(attempts: list[ConnectionAttempt]) -> float:
    """70 points for success rate, up to 20 for speed, minus 5 per average retry."""
    total = len(attempts)
    successes = [a for a in attempts if a.success]
    times = [a.connection_time for a in attempts if a.connection_time is not None]
    avg_time = sum(times) / len(times) if times else 0.0

    success_score = len(successes) / total * 70
    speed_score = max(0.0, 20 - avg_time * 2) if avg_time > 0 else 0.0
    retry_penalty = sum(a.retry_count for a in attempts) / total * 5
    return min(100.0, max(0.0, success_score + speed_score - retry_penalty))


class ConnectionTelemetry:
    """Append-only record of connection attempts."""

    def __init__(self, max_history_days: int = 30):
        self.max_history = timedelta(days=max_history_days)
        self._attempts: list[ConnectionAttempt] = []

    @property
    def attempts(self) -> list[ConnectionAttempt]:
        return list(self._attempts)

    def record_attempt(
            self,
            server_id: str,
            success: bool,
            connection_time: Optional[float] = None,
            retry_count: int = 0,
            failure_reason: Optional[str] = None,
    ) -> None:
        self._attempts.append(ConnectionAttempt(
            server_id=server_id,
            success=success,
            connection_time=connection_time,
            retry_count=retry_count,
            failure_reason=failure_reason,
        ))
        self._prune()
        logger.debug(f"Recorded {'success' if success else 'failure'} for server {server_id}")

    def _prune(self) -> None:
        cutoff = datetime.now() - self.max_history
        self._attempts = [a for a in self._attempts if a.timestamp >= cutoff]

    def stats(self) -> Dict[str, ServerStats]:
        grouped: Dict[str, list[ConnectionAttempt]] = defaultdict(list)
        for attempt in self._attempts:
            grouped[attempt.server_id].append(attempt)

        result = {}
        for server_id, attempts in grouped.items():
            success_count = sum(1 for a in attempts if a.success)
            times = [a.connection_time for a in attempts if a.connection_time is not None]
            result[server_id] = ServerStats(
                total_attempts=len(attempts),
                success_count=success_count,
                failure_count=len(attempts) - success_count,
                avg_connection_time=sum(times) / len(times) if times else 0.0,
                reliability_score=reliability(attempts),
            )
        return result

    def stats_for(self, server_id: str) -> Optional[ServerStats]:
        return self.stats().get(server_id)
