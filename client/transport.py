"""
UDP transport with a background receive thread
"""

import ipaddress
import logging
import queue
import socket
import threading
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


class NetworkError(Exception):
    """网络层错误基类"""


class TransportError(NetworkError):
    """发送或套接字操作失败"""


def resolve_endpoint(host: str, port: int) -> Tuple[str, int]:
    """
    校验服务器地址

    只接受 IP 字面量；无效地址回退到回环地址。

    Args:
        host: IP 地址字符串
        port: 端口

    Returns:
        (ip, port)
    """
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        logger.warning(f"Invalid IP {host}, using loopback")
        ip = ipaddress.ip_address('127.0.0.1')

    if not 0 < port < 65536:
        raise ValueError(f"Invalid port: {port}")

    return (str(ip), port)


class UdpTransport:
    """
    不可靠数据报传输

    发送在调用线程中同步完成（发完即忘）；
    接收在后台线程中进行，原始数据报放入有界的线程安全队列，
    由游戏循环每帧调用 drain() 取出。接收线程不触碰任何其他状态。
    """

    RECV_POLL_TIMEOUT = 0.5

    def __init__(self, host: str = '127.0.0.1', port: int = 9999,
                 recv_buffer_size: int = 4096, inbox_size: int = 1024):
        """
        初始化传输层

        Args:
            host: 服务器 IP
            port: 服务器端口
            recv_buffer_size: 单个数据报最大字节数
            inbox_size: 接收队列容量，满时丢弃新数据报
        """
        self.remote_endpoint = resolve_endpoint(host, port)
        self.recv_buffer_size = recv_buffer_size

        self.inbox: queue.Queue = queue.Queue(maxsize=inbox_size)
        self.sock: Optional[socket.socket] = None
        self.recv_thread: Optional[threading.Thread] = None
        self.running = False

        # 统计
        self.bytes_sent = 0
        self.bytes_received = 0

    @property
    def is_open(self) -> bool:
        return self.sock is not None

    def open(self):
        """创建套接字并启动接收线程"""
        if self.sock is not None:
            return

        family = socket.AF_INET6 if ':' in self.remote_endpoint[0] else socket.AF_INET
        try:
            sock = socket.socket(family, socket.SOCK_DGRAM)
            sock.bind(('::' if family == socket.AF_INET6 else '0.0.0.0', 0))
            sock.settimeout(self.RECV_POLL_TIMEOUT)
        except OSError as e:
            raise TransportError(f"Failed to open UDP socket: {e}") from e

        self.sock = sock
        self.running = True
        self.recv_thread = threading.Thread(
            target=self._receive_loop, name='udp-receive', daemon=True
        )
        self.recv_thread.start()

        logger.info(f"UDP transport initialized, targeting {self.remote_endpoint}")

    def close(self):
        """关闭套接字并等待接收线程退出；可重复调用"""
        self.running = False

        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass
            self.sock = None

        if self.recv_thread is not None:
            if self.recv_thread is not threading.current_thread():
                self.recv_thread.join(timeout=self.RECV_POLL_TIMEOUT * 2)
            self.recv_thread = None

    def send(self, data: bytes):
        """
        发送一个数据报到服务器

        Raises:
            TransportError: 套接字未打开或发送失败
        """
        if self.sock is None:
            raise TransportError("Transport is not open")

        try:
            self.sock.sendto(data, self.remote_endpoint)
        except OSError as e:
            raise TransportError(f"Failed to send packet: {e}") from e

        self.bytes_sent += len(data)

    def drain(self, max_items: Optional[int] = None) -> List[bytes]:
        """
        取出所有已收到的数据报（非阻塞）

        Args:
            max_items: 本次最多取出的数量

        Returns:
            数据报列表，按到达顺序
        """
        datagrams = []
        while max_items is None or len(datagrams) < max_items:
            try:
                data = self.inbox.get_nowait()
            except queue.Empty:
                break
            self.bytes_received += len(data)
            datagrams.append(data)
        return datagrams

    def _receive_loop(self):
        """接收线程主循环"""
        sock = self.sock
        while self.running and sock is not None:
            try:
                data, addr = sock.recvfrom(self.recv_buffer_size)
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    break
                logger.warning(f"Receive failed: {e}")
                continue

            if (addr[0], addr[1]) != self.remote_endpoint:
                logger.debug(f"Ignoring datagram from unexpected peer {addr}")
                continue

            try:
                self.inbox.put_nowait(data)
            except queue.Full:
                logger.warning("Receive queue full, dropping datagram")

        logger.debug("Receive loop stopped")
