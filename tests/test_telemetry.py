from datetime import datetime, timedelta

import pytest

from gateaway.vpn.telemetry import ConnectionAttempt, ConnectionTelemetry, reliability


def test_perfect_fast_server_scores_high():
    attempts = [ConnectionAttempt("a", success=True, connection_time=2.0) for _ in range(4)]

    # 70 for success + (20 - 4) for speed
    assert reliability(attempts) == pytest.approx(86.0)


def test_failures_and_retries_lower_the_score():
    attempts = [
        ConnectionAttempt("a", success=True, connection_time=5.0, retry_count=2),
        ConnectionAttempt("a", success=False, retry_count=2, failure_reason="Authentication Failed"),
    ]

    # 35 for success + 10 for speed - 10 for retries
    assert reliability(attempts) == pytest.approx(35.0)


def test_score_is_clamped():
    attempts = [ConnectionAttempt("a", success=False, retry_count=5)]

    assert reliability(attempts) == 0.0


def test_stats_are_grouped_per_server():
    telemetry = ConnectionTelemetry()
    telemetry.record_attempt("a", success=True, connection_time=3.0)
    telemetry.record_attempt("a", success=False, failure_reason="Connection timeout")
    telemetry.record_attempt("b", success=True, connection_time=1.0)

    stats = telemetry.stats()

    assert set(stats) == {"a", "b"}
    assert stats["a"].total_attempts == 2
    assert stats["a"].failure_count == 1
    assert stats["a"].success_rate == 0.5
    assert stats["a"].avg_connection_time == 3.0
    assert telemetry.stats_for("b").success_count == 1
    assert telemetry.stats_for("c") is None


def test_old_attempts_are_pruned():
    telemetry = ConnectionTelemetry(max_history_days=30)
    telemetry._attempts.append(
        ConnectionAttempt("old", success=True, timestamp=datetime.now() - timedelta(days=31))
    )

    telemetry.record_attempt("new", success=True)

    assert [a.server_id for a in telemetry.attempts] == ["new"]
