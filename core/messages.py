"""
协议消息定义

每个数据报是一个信封（Envelope），包含序列号和且仅包含一个负载（payload）。
负载类型是封闭的：所有类型都登记在 PAYLOAD_TYPES 中，
TAG 是信封中的字段编号，属于兼容性约定，不可修改。

字段编号：
    1  seq
    2  handshake_request        9  username_prompt
    3  handshake_response       10 username_submission
    4  heartbeat                11 username_response
    5  heartbeat_ack            12 reconnection_request
    6  client_position          13 reconnection_response
    7  chat_message             99 server_status
    8  lobby_join_broadcast
"""

from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Type

from .vector import Vec3

SEQ_FIELD = 1
PENDING_ID = 'pending'


@dataclass
class HandshakeRequest:
    """握手请求"""
    TAG: ClassVar[int] = 2
    NAME: ClassVar[str] = 'handshake_request'

    client_name: str = ''


@dataclass
class HandshakeResponse:
    """
    握手响应

    两阶段握手：第一阶段服务器返回 "pending"/"pending"，
    表示已收到请求但尚未分配身份；用户名通过后返回真实ID。
    """
    TAG: ClassVar[int] = 3
    NAME: ClassVar[str] = 'handshake_response'

    private_id: str = ''
    public_id: str = ''

    @property
    def is_pending(self) -> bool:
        return self.private_id == PENDING_ID and self.public_id == PENDING_ID


@dataclass
class Heartbeat:
    """心跳"""
    TAG: ClassVar[int] = 4
    NAME: ClassVar[str] = 'heartbeat'

    client_id: str = ''


@dataclass
class HeartbeatAck:
    """心跳确认"""
    TAG: ClassVar[int] = 5
    NAME: ClassVar[str] = 'heartbeat_ack'

    client_id: str = ''


@dataclass
class ClientPosition:
    """
    位置更新

    timestamp 由发送方写入，服务器回显本地玩家位置时原样带回，
    用于服务器校正。
    """
    TAG: ClassVar[int] = 6
    NAME: ClassVar[str] = 'client_position'

    client_id: str = ''
    position: Vec3 = field(default_factory=Vec3)
    velocity: Vec3 = field(default_factory=Vec3)
    timestamp: float = 0.0


@dataclass
class ChatMessage:
    """聊天消息"""
    TAG: ClassVar[int] = 7
    NAME: ClassVar[str] = 'chat_message'

    client_id: str = ''
    message: str = ''


@dataclass
class LobbyJoinBroadcast:
    """大厅加入广播"""
    TAG: ClassVar[int] = 8
    NAME: ClassVar[str] = 'lobby_join_broadcast'

    public_id: str = ''
    color_hex: str = ''
    position: Vec3 = field(default_factory=Vec3)
    is_local_player: bool = False


@dataclass
class UsernamePrompt:
    """服务器请求用户名"""
    TAG: ClassVar[int] = 9
    NAME: ClassVar[str] = 'username_prompt'

    message: str = ''


@dataclass
class UsernameSubmission:
    """提交用户名"""
    TAG: ClassVar[int] = 10
    NAME: ClassVar[str] = 'username_submission'

    username: str = ''


@dataclass
class UsernameResponse:
    """用户名校验结果"""
    TAG: ClassVar[int] = 11
    NAME: ClassVar[str] = 'username_response'

    username: str = ''
    is_accepted: bool = False
    message: str = ''
    suggestions: List[str] = field(default_factory=list)


@dataclass
class ReconnectionRequest:
    """会话重连请求"""
    TAG: ClassVar[int] = 12
    NAME: ClassVar[str] = 'reconnection_request'

    username: str = ''
    session_token: str = ''


@dataclass
class ReconnectionResponse:
    """会话重连结果"""
    TAG: ClassVar[int] = 13
    NAME: ClassVar[str] = 'reconnection_response'

    is_successful: bool = False
    message: str = ''
    private_id: str = ''
    public_id: str = ''


@dataclass
class ServerStatus:
    """服务器状态消息"""
    TAG: ClassVar[int] = 99
    NAME: ClassVar[str] = 'server_status'

    client_id: str = ''
    message: str = ''


PAYLOAD_TYPES: Dict[int, Type] = {
    cls.TAG: cls for cls in (
        HandshakeRequest,
        HandshakeResponse,
        Heartbeat,
        HeartbeatAck,
        ClientPosition,
        ChatMessage,
        LobbyJoinBroadcast,
        UsernamePrompt,
        UsernameSubmission,
        UsernameResponse,
        ReconnectionRequest,
        ReconnectionResponse,
        ServerStatus,
    )
}


@dataclass
class Envelope:
    """
    数据报信封

    属性:
        sequence (int):
            发送方序列号（uint32），每个发出的包严格递增，从1开始。

        payload:
            PAYLOAD_TYPES 中的某一种负载。
            收到的包如果只包含未知字段，payload 为 None，分发时忽略。
    """
    sequence: int
    payload: Optional[object] = None

    @property
    def payload_type(self) -> Optional[Type]:
        return type(self.payload) if self.payload is not None else None

    @property
    def payload_name(self) -> str:
        if self.payload is None:
            return 'none'
        return self.payload.NAME
