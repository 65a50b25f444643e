"""
Integration tests: real UDP transport against a loopback lobby server
"""

import socket
import threading
import time

import pytest

from core.codec import decode, encode
from core.config import Config
from core.messages import (
    ChatMessage,
    Envelope,
    HandshakeRequest,
    HandshakeResponse,
    Heartbeat,
    HeartbeatAck,
    UsernamePrompt,
    UsernameResponse,
    UsernameSubmission,
)
from client.connection import ConnectionState
from client.game_client import GameClient
from client.transport import TransportError, UdpTransport, resolve_endpoint


class LoopbackLobbyServer:
    """最小的大厅服务器：两阶段握手、心跳确认、聊天回显"""

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(('127.0.0.1', 0))
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self.received = []
        self.sequence = 0
        self.running = True
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc):
        self.running = False
        self.thread.join(timeout=1.0)
        self.sock.close()

    def _reply(self, payload, addr):
        self.sequence += 1
        self.sock.sendto(encode(Envelope(self.sequence, payload)), addr)

    def _serve(self):
        while self.running:
            try:
                data, addr = self.sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break

            envelope = decode(data)
            self.received.append(envelope)
            payload = envelope.payload

            if isinstance(payload, HandshakeRequest):
                self._reply(HandshakeResponse('pending', 'pending'), addr)
                self._reply(UsernamePrompt('Enter your username'), addr)
            elif isinstance(payload, UsernameSubmission):
                self._reply(UsernameResponse(payload.username, True, 'Welcome'), addr)
                self._reply(HandshakeResponse('priv-' + payload.username, payload.username), addr)
            elif isinstance(payload, Heartbeat):
                self._reply(HeartbeatAck(payload.client_id), addr)
            elif isinstance(payload, ChatMessage):
                self._reply(payload, addr)


def pump(client, predicate, timeout=3.0):
    """驱动客户端直到条件满足"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        client.tick()
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestUdpTransport:
    """UDP 传输层测试"""

    def test_invalid_ip_falls_back_to_loopback(self):
        """测试无效地址回退到回环地址"""
        assert resolve_endpoint('not-an-ip', 9999) == ('127.0.0.1', 9999)

    def test_invalid_port_rejected(self):
        """测试无效端口"""
        with pytest.raises(ValueError):
            resolve_endpoint('127.0.0.1', 70000)

    def test_send_before_open(self):
        """测试未打开时发送失败"""
        transport = UdpTransport('127.0.0.1', 9999)
        with pytest.raises(TransportError):
            transport.send(b'x')

    def test_close_is_idempotent(self):
        """测试重复关闭"""
        transport = UdpTransport('127.0.0.1', 9999)
        transport.open()
        transport.close()
        transport.close()

        assert not transport.is_open


class TestLoopbackSession:
    """完整客户端与回环服务器的集成测试"""

    def test_connect_chat_and_disconnect(self):
        """测试连接、聊天回显和断开"""
        with LoopbackLobbyServer() as server:
            config = Config()
            config.network.server_port = server.port
            config.network.enable_auto_reconnect = False

            client = GameClient(config)
            client.on_username_prompt(lambda message: client.submit_username('Alice'))
            chats = []
            client.on_chat(chats.append)

            assert client.start()
            try:
                client.connect()
                assert pump(client, lambda: client.connected)
                assert client.connection.public_id == 'Alice'
                assert client.connection.private_id == 'priv-Alice'
                assert client.session.has_valid_session

                assert client.send_chat('hello lobby')
                assert pump(client, lambda: bool(chats))
                assert chats[0] == ChatMessage('Alice', 'hello lobby')
            finally:
                client.stop()

            assert client.state == ConnectionState.DISCONNECTED
            assert client.transport.bytes_sent > 0
            assert client.transport.bytes_received > 0

            sequences = [env.sequence for env in server.received]
            assert sequences == sorted(sequences)
            assert len(set(sequences)) == len(sequences)
