"""
UDP lobby game client
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Tuple

from core.codec import DecodeError, decode
from core.config import Config
from core.messages import (
    ChatMessage,
    ClientPosition,
    HandshakeRequest,
    HandshakeResponse,
    Heartbeat,
    HeartbeatAck,
    LobbyJoinBroadcast,
    ReconnectionRequest,
    ReconnectionResponse,
    ServerStatus,
    UsernamePrompt,
    UsernameResponse,
    UsernameSubmission,
)
from core.vector import Vec3
from .connection import ConnectionState, ConnectionStateMachine
from .dispatcher import PacketDispatcher
from .interpolation import RemoteInterpolator
from .predictor import ClientPredictor
from .session import SessionManager
from .transport import NetworkError, UdpTransport

logger = logging.getLogger(__name__)


class GameClient:
    """
    游戏客户端
    负责与服务器的通信、连接管理、本地预测和远程插值

    所有状态都在调用 tick() 的线程中修改；
    传输层的接收线程只往队列里放原始数据报。
    """

    LEFT_LOBBY_MARKER = 'left the lobby'

    def __init__(self, config: Config = None, transport=None, clock: Callable[[], float] = time.monotonic):
        """
        初始化客户端

        Args:
            config: 客户端配置
            transport: 传输层，默认按配置创建 UdpTransport
            clock: 时间源（秒）
        """
        self.config = config or Config()
        self.clock = clock

        net = self.config.network
        self.transport = transport or UdpTransport(
            net.server_ip, net.server_port,
            recv_buffer_size=net.recv_buffer_size,
            inbox_size=net.inbox_size,
        )

        self.session = SessionManager()
        self.connection = ConnectionStateMachine(net, self.transport, self.session)
        self.predictor = ClientPredictor(self.config.movement)
        self.interpolator = RemoteInterpolator(self.config.interpolation)

        self.dispatcher = PacketDispatcher({
            HandshakeResponse: self.connection.handle_handshake_response,
            UsernamePrompt: self.connection.handle_username_prompt,
            UsernameResponse: self._handle_username_response,
            ReconnectionResponse: self.connection.handle_reconnection_response,
            HeartbeatAck: self.connection.handle_heartbeat_ack,
            ServerStatus: self._handle_server_status,
            ClientPosition: self._handle_client_position,
            LobbyJoinBroadcast: self._handle_lobby_join,
            ChatMessage: self._handle_chat_message,
            # 只由客户端发出的类型
            HandshakeRequest: self._ignore_outbound,
            Heartbeat: self._ignore_outbound,
            UsernameSubmission: self._ignore_outbound,
            ReconnectionRequest: self._ignore_outbound,
        })

        self.local_player_id: Optional[str] = None
        self.last_tick_time: Optional[float] = None
        self.decode_errors = 0

        # 回调
        self._username_response_callbacks: List[Callable] = []
        self._chat_callbacks: List[Callable] = []
        self._player_joined_callbacks: List[Callable] = []
        self._player_left_callbacks: List[Callable] = []

        self.connection.on_connected(self._on_connection_established)

    # ==================== 生命周期 ====================

    def start(self) -> bool:
        """
        打开传输层

        Returns:
            是否成功
        """
        if getattr(self.transport, 'is_open', False):
            return True
        try:
            self.transport.open()
            return True
        except NetworkError as e:
            logger.error(f"Failed to initialize client: {e}")
            return False

    def stop(self):
        """断开并关闭传输层"""
        self.disconnect()
        self.transport.close()

    # ==================== 公共 API ====================

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def connected(self) -> bool:
        return self.connection.is_connected

    def connect(self):
        """手动连接"""
        self.connection.connect(self.clock())

    def disconnect(self):
        """手动断开；清除会话，不自动重连"""
        self.connection.disconnect(self.clock())

    def submit_username(self, username: str) -> bool:
        """提交用户名"""
        return self.connection.submit_username(username, self.clock())

    def set_auto_reconnect(self, enabled: bool):
        self.connection.set_auto_reconnect(enabled, self.clock())

    def set_session_reconnect(self, enabled: bool):
        self.connection.set_session_reconnect(enabled)

    def send_position(self, position: Vec3, velocity: Vec3, now: float = None) -> bool:
        """
        发送本地玩家位置，时间戳为本地时间

        Returns:
            是否发送成功；未连接时不发送
        """
        if not self.connected:
            return False
        if now is None:
            now = self.clock()
        return self.connection.send_payload(ClientPosition(
            client_id=self.connection.public_id or '',
            position=position,
            velocity=velocity,
            timestamp=now,
        ), now)

    def send_chat(self, message: str) -> bool:
        """发送聊天消息"""
        if not self.connected:
            return False
        return self.connection.send_payload(
            ChatMessage(client_id=self.connection.public_id or '', message=message),
            self.clock(),
        )

    def send_lobby_join(self, color_hex: str) -> bool:
        """以指定颜色加入大厅"""
        if not self.connected:
            return False
        return self.connection.send_payload(LobbyJoinBroadcast(
            public_id=self.connection.public_id or '',
            color_hex=color_hex,
            position=self.predictor.position,
        ), self.clock())

    def move(self, input_vector: Tuple[float, float], dt: float, now: float = None) -> Vec3:
        """
        应用本地移动输入，并按发送频率上报位置

        Args:
            input_vector: 输入向量 (x, y)
            dt: 帧时间（秒）
            now: 当前时间，默认取时钟

        Returns:
            预测后的位置
        """
        if now is None:
            now = self.clock()
        position = self.predictor.apply_input(input_vector, dt, now)

        if self.connected and self.predictor.is_moving and self.predictor.should_send(now):
            self.send_position(position, self.predictor.velocity, now)

        return position

    def tick(self, now: float = None, dt: float = None):
        """
        推进一帧

        1. 取出并分发所有收到的数据报
        2. 推进连接状态机（超时、心跳、重连）
        3. 更新远程实体插值

        Args:
            now: 当前时间，默认取时钟
            dt: 帧时间；默认使用距离上次 tick 的时间
        """
        if now is None:
            now = self.clock()
        if dt is None:
            dt = 0.0 if self.last_tick_time is None else now - self.last_tick_time
        self.last_tick_time = now

        for data in self.transport.drain():
            self._process_datagram(data, now)

        self.connection.tick(now)
        self.interpolator.tick(now, dt)

    # ==================== 回调注册 ====================

    def on_connected(self, callback: Callable[[str, str], None]):
        self.connection.on_connected(callback)

    def on_disconnected(self, callback: Callable[[str], None]):
        self.connection.on_disconnected(callback)

    def on_server_message(self, callback: Callable[[str], None]):
        self.connection.on_server_message(callback)

    def on_username_prompt(self, callback: Callable[[str], None]):
        self.connection.on_username_prompt(callback)

    def on_username_response(self, callback: Callable[[UsernameResponse], None]):
        self._username_response_callbacks.append(callback)

    def on_packet(self, callback: Callable, payload_type=None):
        """订阅收到的包（全部或某种负载）"""
        self.dispatcher.subscribe(callback, payload_type)

    def on_chat(self, callback: Callable[[ChatMessage], None]):
        self._chat_callbacks.append(callback)

    def on_player_joined(self, callback: Callable[[LobbyJoinBroadcast], None]):
        self._player_joined_callbacks.append(callback)

    def on_player_left(self, callback: Callable[[str], None]):
        self._player_left_callbacks.append(callback)

    # ==================== 包处理 ====================

    def _process_datagram(self, data: bytes, now: float):
        try:
            envelope = decode(data)
        except DecodeError as e:
            self.decode_errors += 1
            logger.warning(f"Failed to parse packet: {e}")
            return

        self.dispatcher.dispatch(envelope, now)

    def _on_connection_established(self, private_id: str, public_id: str):
        self.local_player_id = public_id

    def _handle_username_response(self, response: UsernameResponse, now: float):
        logger.info(
            f"Username response - {response.username}, "
            f"Accepted: {response.is_accepted}, Message: {response.message}"
        )
        self.connection.handle_username_response(response, now)
        self._notify(self._username_response_callbacks, response)

    def _handle_server_status(self, status: ServerStatus, now: float):
        self.connection.handle_server_status(status, now)

        if self.LEFT_LOBBY_MARKER in status.message and status.client_id:
            logger.info(f"Player {status.client_id} left the lobby")
            self.interpolator.remove_entity(status.client_id)
            self._notify(self._player_left_callbacks, status.client_id)

    def _handle_client_position(self, update: ClientPosition, now: float):
        if not update.client_id:
            return

        if update.client_id == self.local_player_id:
            self.predictor.on_server_position(update.position, update.timestamp)
        else:
            self.interpolator.push_snapshot(
                update.client_id, update.position, update.velocity, update.timestamp, now
            )

    def _handle_lobby_join(self, join: LobbyJoinBroadcast, now: float):
        logger.info(
            f"Lobby join broadcast - Player: {join.public_id}, "
            f"Color: {join.color_hex}, IsLocal: {join.is_local_player}"
        )
        if join.is_local_player:
            self.local_player_id = join.public_id
            self.predictor.reset(join.position)
        elif join.public_id:
            self.interpolator.set_initial_position(join.public_id, join.position)

        self._notify(self._player_joined_callbacks, join)

    def _handle_chat_message(self, message: ChatMessage, now: float):
        self._notify(self._chat_callbacks, message)

    def _ignore_outbound(self, payload, now: float):
        logger.debug(f"Ignoring client-only payload from server: {payload.NAME}")

    @staticmethod
    def _notify(callbacks: list, *args):
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Callback error: {e}")


class ClientGameLoop:
    """
    客户端游戏循环
    以固定频率调用 client.tick()，并在每帧调用更新回调
    """

    TICK_RATE = 60
    MAX_FRAME_TIME = 0.1

    def __init__(self, client: GameClient, tick_rate: int = TICK_RATE):
        """
        初始化游戏循环

        Args:
            client: 游戏客户端
            tick_rate: 每秒帧数
        """
        self.client = client
        self.frame_time = 1.0 / tick_rate
        self.running = False
        self.frame_count = 0

        # 回调 on_update(dt)，可以是协程函数
        self.on_update: Optional[Callable] = None

    async def run(self, duration: float = None):
        """
        运行游戏循环

        Args:
            duration: 运行时长（秒），None 表示直到 stop()
        """
        self.running = True
        start_time = time.monotonic()
        last_time = start_time

        while self.running:
            current_time = time.monotonic()
            # 限制最大帧时间
            dt = min(current_time - last_time, self.MAX_FRAME_TIME)
            last_time = current_time

            if self.on_update:
                result = self.on_update(dt)
                if asyncio.iscoroutine(result):
                    await result

            self.client.tick(dt=dt)
            self.frame_count += 1

            if duration is not None and current_time - start_time >= duration:
                break

            await asyncio.sleep(self.frame_time)

        self.running = False

    def stop(self):
        """停止游戏循环"""
        self.running = False
