"""
Shared fixtures: fake clock and in-memory transport
"""

from typing import List

import pytest

from core.codec import decode, encode
from core.messages import Envelope
from client.transport import TransportError


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeTransport:
    """记录发出的数据报，收包由测试直接放入 incoming"""

    remote_endpoint = ('127.0.0.1', 9999)

    def __init__(self):
        self.sent: List[bytes] = []
        self.incoming: List[bytes] = []
        self.fail_sends = False
        self.is_open = False

    def open(self):
        self.is_open = True

    def close(self):
        self.is_open = False

    def send(self, data: bytes):
        if self.fail_sends:
            raise TransportError("simulated send failure")
        self.sent.append(data)

    def drain(self, max_items=None) -> List[bytes]:
        datagrams, self.incoming = self.incoming, []
        return datagrams

    def push(self, payload, sequence: int = 1):
        """模拟服务器发来一个负载"""
        self.incoming.append(encode(Envelope(sequence=sequence, payload=payload)))

    def sent_envelopes(self) -> List[Envelope]:
        return [decode(data) for data in self.sent]

    def sent_payloads(self) -> list:
        return [env.payload for env in self.sent_envelopes()]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()
