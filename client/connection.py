"""
Connection state machine: handshake, username negotiation,
session resume, heartbeat and reconnection scheduling
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from core.codec import UINT32_MAX, encode
from core.config import NetworkConfig
from core.messages import (
    Envelope,
    HandshakeRequest,
    HandshakeResponse,
    Heartbeat,
    HeartbeatAck,
    ReconnectionRequest,
    ReconnectionResponse,
    ServerStatus,
    UsernamePrompt,
    UsernameResponse,
    UsernameSubmission,
)
from .session import SessionManager
from .transport import NetworkError

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """连接状态"""
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    HANDSHAKE_COMPLETE = 'handshake_complete'
    WAITING_FOR_USERNAME_PROMPT = 'waiting_for_username_prompt'
    USERNAME_VALIDATING = 'username_validating'
    CONNECTED = 'connected'
    RECONNECTING = 'reconnecting'
    RECONNECTING_WITH_SESSION = 'reconnecting_with_session'


# 可以接受最终身份的协商阶段
NEGOTIATING_STATES = frozenset({
    ConnectionState.CONNECTING,
    ConnectionState.WAITING_FOR_USERNAME_PROMPT,
    ConnectionState.HANDSHAKE_COMPLETE,
    ConnectionState.USERNAME_VALIDATING,
})

# 可以接受用户名提示的状态
PROMPTABLE_STATES = frozenset({
    ConnectionState.WAITING_FOR_USERNAME_PROMPT,
    ConnectionState.HANDSHAKE_COMPLETE,
    ConnectionState.USERNAME_VALIDATING,
})


@dataclass
class Connection:
    """
    连接数据，只由状态机修改

    属性:
        state: 当前状态
        private_id / public_id: 服务器分配的身份，未连接时为 None
        sequence_counter: 最后一个发出包的序列号，第一个包为 1
        *_sent_at: 对应请求的发送时间，None 表示没有进行中的请求
        last_heartbeat_ack_at: 最近一次收到心跳确认的时间
        next_heartbeat_at: 下一次发送心跳的时间
    """
    state: ConnectionState = ConnectionState.DISCONNECTED
    private_id: Optional[str] = None
    public_id: Optional[str] = None
    sequence_counter: int = 0
    handshake_sent_at: Optional[float] = None
    username_sent_at: Optional[float] = None
    reconnect_sent_at: Optional[float] = None
    last_heartbeat_ack_at: Optional[float] = None
    next_heartbeat_at: Optional[float] = None

    def clear_deadlines(self):
        self.handshake_sent_at = None
        self.username_sent_at = None
        self.reconnect_sent_at = None


class ReconnectSchedule:
    """
    循环重连计划

    每安排一次重连，索引前进一位并对长度取模；
    用完所有间隔后从第一个重新开始。
    """

    def __init__(self, delays: Sequence[float]):
        if not delays:
            raise ValueError("Reconnect delays must not be empty")
        self.delays: List[float] = [float(d) for d in delays]
        self.current_index = 0
        self.next_attempt_at: Optional[float] = None

    def schedule_next(self, now: float) -> float:
        """
        安排下一次重连

        Returns:
            本次使用的间隔
        """
        delay = self.delays[self.current_index]
        self.next_attempt_at = now + delay
        self.current_index = (self.current_index + 1) % len(self.delays)
        return delay

    def reset(self):
        self.current_index = 0
        self.next_attempt_at = None

    def cancel(self):
        self.next_attempt_at = None

    def is_due(self, now: float) -> bool:
        return self.next_attempt_at is not None and now >= self.next_attempt_at

    def seconds_remaining(self, now: float) -> float:
        if self.next_attempt_at is None:
            return 0.0
        return max(0.0, self.next_attempt_at - now)


class ConnectionStateMachine:
    """
    连接状态机

    所有等待都表示为“当前时间与截止时间比较”，
    由游戏循环每帧调用 tick(now) 推进。公共方法不会抛出异常：
    失败一律转换为状态变化和 disconnected 通知。
    """

    SHUTDOWN_MARKER = 'shutting down'

    def __init__(self, config: NetworkConfig, transport, session: SessionManager):
        """
        初始化状态机

        Args:
            config: 网络配置
            transport: 提供 send(bytes) 的传输层
            session: 会话管理器
        """
        self.config = config
        self.transport = transport
        self.session = session

        self.connection = Connection()
        self.schedule = ReconnectSchedule(config.reconnect_delays)

        self.auto_reconnect = config.enable_auto_reconnect
        self.session_reconnect = config.enable_session_reconnect
        # 手动断开后暂停自动重连，直到下一次手动连接
        self._auto_reconnect_suspended = False

        # 回调
        self._connected_callbacks: List[Callable[[str, str], None]] = []
        self._disconnected_callbacks: List[Callable[[str], None]] = []
        self._server_message_callbacks: List[Callable[[str], None]] = []
        self._username_prompt_callbacks: List[Callable[[str], None]] = []

    # ==================== 只读访问 ====================

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def private_id(self) -> Optional[str]:
        return self.connection.private_id

    @property
    def public_id(self) -> Optional[str]:
        return self.connection.public_id

    @property
    def is_connected(self) -> bool:
        return self.connection.state == ConnectionState.CONNECTED

    @property
    def auto_reconnect_active(self) -> bool:
        return self.auto_reconnect and not self._auto_reconnect_suspended

    def seconds_until_reconnect(self, now: float) -> float:
        """距离下一次重连的秒数，没有安排时为 0"""
        return self.schedule.seconds_remaining(now)

    # ==================== 回调注册 ====================

    def on_connected(self, callback: Callable[[str, str], None]):
        """连接完成回调 (private_id, public_id)"""
        self._connected_callbacks.append(callback)

    def on_disconnected(self, callback: Callable[[str], None]):
        """断开回调 (reason)"""
        self._disconnected_callbacks.append(callback)

    def on_server_message(self, callback: Callable[[str], None]):
        """服务器消息回调 (text)"""
        self._server_message_callbacks.append(callback)

    def on_username_prompt(self, callback: Callable[[str], None]):
        """用户名提示回调 (text)"""
        self._username_prompt_callbacks.append(callback)

    # ==================== 公共操作 ====================

    def connect(self, now: float):
        """手动连接；只在 DISCONNECTED 状态下生效"""
        if self.connection.state != ConnectionState.DISCONNECTED:
            logger.warning(f"Connect ignored in state {self.connection.state.value}")
            return

        self._auto_reconnect_suspended = False
        self.schedule.reset()
        self._try_connect(now)

    def disconnect(self, now: float, reason: str = 'manual disconnect'):
        """
        手动断开

        立即清除会话和所有截止时间，并暂停自动重连。可重复调用。
        """
        already_disconnected = (
            self.connection.state == ConnectionState.DISCONNECTED
            and self.schedule.next_attempt_at is None
            and not self.session.has_valid_session
        )

        self._auto_reconnect_suspended = True
        self.session.clear_session()
        self._reset_connection(ConnectionState.DISCONNECTED)
        self.schedule.reset()

        if already_disconnected:
            return

        logger.info(f"Disconnected: {reason}")
        self._notify(self._disconnected_callbacks, reason)

    def submit_username(self, username: str, now: float) -> bool:
        """
        提交用户名

        Returns:
            True 如果已发送
        """
        if self.connection.state != ConnectionState.HANDSHAKE_COMPLETE:
            logger.warning("Cannot send username - not ready for submission")
            return False

        self.connection.state = ConnectionState.USERNAME_VALIDATING
        self.connection.username_sent_at = now

        logger.info(f"Username submission sent: {username}")
        return self.send_payload(UsernameSubmission(username=username), now)

    def set_auto_reconnect(self, enabled: bool, now: float):
        """运行时开关自动重连"""
        self.auto_reconnect = enabled
        if enabled:
            self._auto_reconnect_suspended = False
            if self.connection.state == ConnectionState.DISCONNECTED:
                self.schedule.reset()
                delay = self.schedule.schedule_next(now)
                logger.info(f"Next reconnection attempt in {delay}s")
        elif self.connection.state == ConnectionState.DISCONNECTED:
            self.schedule.cancel()

    def set_session_reconnect(self, enabled: bool):
        """运行时开关会话重连；关闭时清除已保存的会话"""
        self.session_reconnect = enabled
        if not enabled:
            self.session.clear_session()

    def send_payload(self, payload, now: float) -> bool:
        """
        编码并发送一个负载，序列号在这里分配

        发送失败视为连接丢失。

        Returns:
            True 如果发送成功
        """
        # 序列号在 uint32 范围内回绕，跳过 0
        if self.connection.sequence_counter >= UINT32_MAX:
            self.connection.sequence_counter = 0
        self.connection.sequence_counter += 1
        envelope = Envelope(sequence=self.connection.sequence_counter, payload=payload)

        try:
            self.transport.send(encode(envelope))
        except NetworkError as e:
            logger.error(f"Failed to send packet: {e}")
            self._handle_connection_lost(now, f"send failed: {e}")
            return False

        return True

    # ==================== 每帧推进 ====================

    def tick(self, now: float):
        """检查所有截止时间并推进状态"""
        conn = self.connection
        state = conn.state

        if state == ConnectionState.DISCONNECTED:
            if self.auto_reconnect_active and self._can_retry_from_disconnected(now):
                self._try_connect(now)

        elif state == ConnectionState.CONNECTING:
            if self._expired(conn.handshake_sent_at, self.config.handshake_timeout, now):
                logger.warning("Handshake timed out")
                self._attempt_failed(now, 'handshake timed out')

        elif state == ConnectionState.USERNAME_VALIDATING:
            if self._expired(conn.username_sent_at, self.config.handshake_timeout, now):
                logger.warning("Username validation timed out")
                self._attempt_failed(now, 'username validation timed out')

        elif state == ConnectionState.HANDSHAKE_COMPLETE:
            # 用户名被拒绝后等待重新提交
            if self._expired(conn.username_sent_at, self.config.handshake_timeout, now):
                logger.warning("No username resubmitted after rejection")
                self._attempt_failed(now, 'username validation timed out')

        elif state == ConnectionState.CONNECTED:
            if self._expired(conn.last_heartbeat_ack_at, self.config.connection_timeout, now):
                logger.warning("Connection timed out - no heartbeat ack received")
                self._handle_connection_lost(now, 'heartbeat timed out')
            elif conn.next_heartbeat_at is not None and now >= conn.next_heartbeat_at:
                self._send_heartbeat(now)

        elif state in (ConnectionState.RECONNECTING, ConnectionState.RECONNECTING_WITH_SESSION):
            if conn.reconnect_sent_at is not None:
                if self._expired(conn.reconnect_sent_at, self.config.session_timeout, now):
                    logger.warning("Session reconnection timed out")
                    conn.reconnect_sent_at = None
                    self._schedule_next(now)
            elif self.schedule.is_due(now):
                self._try_connect(now)

        # WAITING_FOR_USERNAME_PROMPT 没有计时器

    # ==================== 包处理 ====================

    def handle_handshake_response(self, response: HandshakeResponse, now: float):
        conn = self.connection

        if response.is_pending:
            if conn.state != ConnectionState.CONNECTING:
                logger.debug(f"Ignoring handshake ack in state {conn.state.value}")
                return
            conn.state = ConnectionState.WAITING_FOR_USERNAME_PROMPT
            conn.handshake_sent_at = None
            logger.info("Handshake acknowledged, waiting for username prompt from server...")
            return

        if conn.state not in NEGOTIATING_STATES:
            logger.debug(f"Ignoring handshake response in state {conn.state.value}")
            return

        self._complete_connection(response.private_id, response.public_id, now)

    def handle_username_prompt(self, prompt: UsernamePrompt, now: float):
        conn = self.connection
        if conn.state not in PROMPTABLE_STATES:
            logger.debug(f"Ignoring username prompt in state {conn.state.value}")
            return

        conn.state = ConnectionState.HANDSHAKE_COMPLETE
        conn.username_sent_at = None
        logger.info(f"Username prompt received: {prompt.message}")
        self._notify(self._username_prompt_callbacks, prompt.message)

    def handle_username_response(self, response: UsernameResponse, now: float):
        conn = self.connection
        if response.is_accepted or conn.state != ConnectionState.USERNAME_VALIDATING:
            return

        # 被拒绝后允许重新提交，超时计时继续
        conn.state = ConnectionState.HANDSHAKE_COMPLETE
        conn.username_sent_at = now
        logger.info(f"Username {response.username} rejected: {response.message}")

    def handle_reconnection_response(self, response: ReconnectionResponse, now: float):
        conn = self.connection
        if conn.state != ConnectionState.RECONNECTING_WITH_SESSION or conn.reconnect_sent_at is None:
            logger.debug(f"Ignoring reconnection response in state {conn.state.value}")
            return

        conn.reconnect_sent_at = None

        if response.is_successful:
            logger.info("Session reconnection successful!")
            self._complete_connection(response.private_id, response.public_id, now)
            return

        logger.info(f"Session reconnection failed: {response.message}")
        self.session.clear_session()
        conn.state = ConnectionState.RECONNECTING
        self.schedule.reset()
        self._schedule_next(now)

    def handle_heartbeat_ack(self, ack: HeartbeatAck, now: float):
        self.connection.last_heartbeat_ack_at = now
        logger.debug(f"Heartbeat acknowledged: {ack.client_id}")

    def handle_server_status(self, status: ServerStatus, now: float):
        logger.warning(f"Server message: {status.message}")
        self._notify(self._server_message_callbacks, status.message)

        if self.SHUTDOWN_MARKER in status.message and self.connection.state != ConnectionState.DISCONNECTED:
            self._handle_connection_lost(now, 'server shutting down')

    # ==================== 内部 ====================

    @staticmethod
    def _expired(started_at: Optional[float], timeout: float, now: float) -> bool:
        return started_at is not None and now - started_at > timeout

    def _can_retry_from_disconnected(self, now: float) -> bool:
        if self.schedule.next_attempt_at is not None:
            return self.schedule.is_due(now)
        sent_at = self.connection.handshake_sent_at
        return sent_at is None or now - sent_at > self.config.handshake_timeout

    def _try_connect(self, now: float):
        """根据是否有有效会话选择会话恢复或完整握手"""
        conn = self.connection
        self.schedule.cancel()

        if self.session_reconnect and self.session.has_valid_session:
            conn.state = ConnectionState.RECONNECTING_WITH_SESSION
            conn.clear_deadlines()
            conn.reconnect_sent_at = now

            username = self.session.stored_username or ''
            logger.info(f"Attempting session reconnection for {username}")
            self.send_payload(
                ReconnectionRequest(username=username, session_token=self.session.session_token or ''),
                now,
            )
            return

        conn.state = ConnectionState.CONNECTING
        conn.clear_deadlines()
        conn.handshake_sent_at = now

        logger.info(f"Attempting normal connection to {getattr(self.transport, 'remote_endpoint', '?')}")
        self.send_payload(HandshakeRequest(client_name=self.config.client_name), now)

    def _attempt_failed(self, now: float, reason: str):
        """握手或用户名阶段超时"""
        self.connection.clear_deadlines()
        if self.auto_reconnect_active:
            self.connection.state = ConnectionState.RECONNECTING
            self._schedule_next(now)
        else:
            self.connection.state = ConnectionState.DISCONNECTED
            self.schedule.cancel()
        self._notify(self._disconnected_callbacks, reason)

    def _handle_connection_lost(self, now: float, reason: str):
        was_connected = self.connection.state == ConnectionState.CONNECTED

        if self.auto_reconnect_active:
            if self.session_reconnect and self.session.has_valid_session:
                new_state = ConnectionState.RECONNECTING_WITH_SESSION
            else:
                new_state = ConnectionState.RECONNECTING
        else:
            new_state = ConnectionState.DISCONNECTED

        self._reset_connection(new_state)

        if was_connected:
            self.schedule.reset()
        if new_state != ConnectionState.DISCONNECTED:
            self._schedule_next(now)
        else:
            self.schedule.cancel()

        logger.info(
            f"Disconnected ({reason}). Auto-reconnect: {self.auto_reconnect_active}, "
            f"Session available: {self.session.has_valid_session}"
        )
        self._notify(self._disconnected_callbacks, reason)

    def _reset_connection(self, state: ConnectionState):
        conn = self.connection
        conn.state = state
        conn.private_id = None
        conn.public_id = None
        conn.last_heartbeat_ack_at = None
        conn.next_heartbeat_at = None
        conn.clear_deadlines()

    def _schedule_next(self, now: float):
        delay = self.schedule.schedule_next(now)
        logger.info(f"Next reconnection attempt in {delay}s")

    def _complete_connection(self, private_id: str, public_id: str, now: float):
        conn = self.connection
        conn.private_id = private_id
        conn.public_id = public_id
        conn.state = ConnectionState.CONNECTED
        conn.clear_deadlines()
        conn.last_heartbeat_ack_at = now
        conn.next_heartbeat_at = now + self.config.heartbeat_interval

        if self.session_reconnect:
            self.session.store_session(public_id, private_id)

        self.schedule.reset()

        logger.info(f"Connected! Private: {private_id}, Public: {public_id}")
        self._notify(self._connected_callbacks, private_id, public_id)

    def _send_heartbeat(self, now: float):
        conn = self.connection
        conn.next_heartbeat_at = now + self.config.heartbeat_interval
        if not conn.private_id:
            return
        if self.send_payload(Heartbeat(client_id=conn.private_id), now):
            logger.debug(f"Heartbeat sent: {conn.private_id}")

    @staticmethod
    def _notify(callbacks: list, *args):
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Callback error: {e}")
