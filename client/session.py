"""
Session storage for token-based reconnection
"""

import logging
import time
import uuid
import zlib
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """已保存的会话"""
    stored_username: Optional[str] = None
    session_token: Optional[str] = None
    is_valid: bool = False


def generate_session_token(private_id: str, unix_time: float) -> str:
    """
    根据私有ID和当前时间生成会话令牌

    使用非加密哈希（CRC32），只作为同一进程内恢复会话的提示，
    不能当作安全凭证。

    Args:
        private_id: 服务器分配的私有ID
        unix_time: Unix 时间戳（秒）

    Returns:
        形如 session_1A2B3C4D 的令牌；私有ID为空时返回随机 UUID
    """
    if not private_id:
        return str(uuid.uuid4())

    token_data = f"{private_id}_{int(unix_time)}"
    digest = zlib.crc32(token_data.encode('utf-8'))
    return f"session_{digest:08X}"


class SessionManager:
    """
    会话管理器

    同一时间只跟踪一个会话（单一客户端身份）。
    状态机只读取会话，写入只通过 store_session / clear_session。
    """

    def __init__(self, wall_clock=time.time):
        self._session = Session()
        self._wall_clock = wall_clock

    @property
    def has_valid_session(self) -> bool:
        return self._session.is_valid

    @property
    def stored_username(self) -> Optional[str]:
        return self._session.stored_username

    @property
    def session_token(self) -> Optional[str]:
        return self._session.session_token

    def snapshot(self) -> Session:
        """返回当前会话的副本"""
        return Session(
            stored_username=self._session.stored_username,
            session_token=self._session.session_token,
            is_valid=self._session.is_valid,
        )

    def store_session(self, username: str, private_id: str, unix_time: Optional[float] = None) -> str:
        """
        保存会话

        Args:
            username: 重连时提交的用户名
            private_id: 私有ID，用于派生令牌
            unix_time: 令牌使用的 Unix 时间，默认取 wall_clock

        Returns:
            新的会话令牌
        """
        if unix_time is None:
            unix_time = self._wall_clock()
        token = generate_session_token(private_id, unix_time)
        self._session = Session(
            stored_username=username,
            session_token=token,
            is_valid=True,
        )
        logger.info(f"Session stored for {username}")
        return token

    def clear_session(self):
        """清除会话；没有会话时什么也不做"""
        if not self._session.is_valid and self._session.session_token is None:
            return
        self._session = Session()
        logger.info("Session cleared")
