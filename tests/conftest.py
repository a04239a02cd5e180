"""Pytest configuration and shared fixtures."""
import pytest
import sys
import os
from datetime import datetime, timezone

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cti.core.config import PipelineConfig


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    """Clock starting at the epoch time of NOW."""
    return FakeClock(start=NOW.timestamp())


@pytest.fixture
def monotonic_clock():
    """Clock starting at zero, for the rate limiter."""
    return FakeClock(start=0.0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def pipeline_config(tmp_path):
    """Config pointing at temporary cache/output directories."""
    return PipelineConfig(
        cache_dir=str(tmp_path / "cache"),
        output_dir=str(tmp_path / "output"),
    )


@pytest.fixture
def infra_payload():
    """Infrastructure scan results: SSH, RDP and SMB exposures."""
    return {
        "hosts": [
            {
                "ip": "203.0.113.5",
                "port": 22,
                "product": "OpenSSH",
                "hostnames": ["vpn.example.com"],
                "vulns": ["CVE-2024-6387"],
                "timestamp": "2025-06-01T06:00:00Z",
            },
            {
                "ip": "198.51.100.7",
                "port": 3389,
                "vulns": {"CVE-2019-0708": {"cvss": 9.8}},
                "timestamp": "2025-06-01T07:00:00Z",
            },
            {
                "ip": "192.0.2.10",
                "port": 445,
                "timestamp": "2025-06-01T08:00:00Z",
            },
        ]
    }


@pytest.fixture
def social_payload():
    """Social posts: one CVE discussion, one ransomware post, one noise post."""
    return {
        "posts": [
            {
                "id": "1001",
                "text": "CVE-2024-6387 is being actively exploited against exposed ssh servers",
                "author": {"username": "researcher1"},
                "metrics": {"likes": 120, "reposts": 30, "replies": 4},
                "createdAt": "2025-06-01T11:00:00Z",
            },
            {
                "id": "1002",
                "text": "New LockBit ransomware campaign hitting RDP endpoints, IOC evil-c2.example.net",
                "author": {"username": "analyst2"},
                "metrics": {"likes": 40, "reposts": 10, "replies": 2},
                "createdAt": "2025-06-01T11:30:00Z",
            },
            {
                "id": "1003",
                "text": "Nice weather today",
                "author": {"username": "random"},
                "metrics": {"likes": 1, "reposts": 0, "replies": 0},
                "createdAt": "2025-06-01T09:00:00Z",
            },
        ]
    }
