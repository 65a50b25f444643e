"""
客户端配置模块

支持从 JSON 配置文件加载配置，方便非程序员修改。

使用方法：
    from core.config import Config, load_config

    config = load_config('client_config.json')
    print(config.network.server_port)

    # 或者直接使用默认值
    config = Config()

配置文件格式：
    {
        "network": {"server_ip": "127.0.0.1", "server_port": 9999, ...},
        "movement": {"movement_speed": 5.0, ...},
        "interpolation": {"interpolation_rate": 15.0, ...}
    }

配置对象需要显式传给各个组件，模块内不保存全局实例。
"""

from dataclasses import dataclass, field, fields, asdict
from typing import List, Optional
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class NetworkConfig:
    """
    网络与连接配置

    时间单位均为秒。
    """

    server_ip: str = '127.0.0.1'
    server_port: int = 9999
    handshake_timeout: float = 3.0
    heartbeat_interval: float = 5.0
    connection_timeout: float = 15.0
    session_timeout: float = 30.0
    # 重连间隔序列，循环使用
    reconnect_delays: List[float] = field(
        default_factory=lambda: [5.0, 10.0, 15.0, 20.0, 25.0, 30.0]
    )
    enable_auto_reconnect: bool = True
    enable_session_reconnect: bool = True
    client_name: str = 'Python Client'
    recv_buffer_size: int = 4096
    inbox_size: int = 1024

    @property
    def server_address(self) -> tuple:
        """(host, port)"""
        return (self.server_ip, self.server_port)


@dataclass
class MovementConfig:
    """
    本地移动与预测配置
    """

    movement_speed: float = 5.0
    network_send_rate: float = 20.0
    max_history: int = 60
    correction_threshold: float = 0.5
    input_dead_zone: float = 0.1

    @property
    def send_interval(self) -> float:
        """两次位置上报之间的最小间隔（秒）"""
        return 1.0 / self.network_send_rate


@dataclass
class InterpolationConfig:
    """
    远程实体插值配置
    """

    interpolation_rate: float = 15.0
    extrapolation_limit: float = 0.5
    max_snapshots: int = 10
    snapshot_max_age: float = 2.0


@dataclass
class Config:
    """
    客户端配置根对象

    从 JSON 文件加载配置，支持重新加载。

    使用方法:
        config = Config()
        config.load_from_file('client_config.json')
        print(config.network.heartbeat_interval)

    保存到文件:
        config.save_to_file('client_config.json')
    """

    network: NetworkConfig = field(default_factory=NetworkConfig)
    movement: MovementConfig = field(default_factory=MovementConfig)
    interpolation: InterpolationConfig = field(default_factory=InterpolationConfig)

    # 配置文件路径
    _config_path: Optional[str] = field(default=None, repr=False)
    _loaded: bool = field(default=False, repr=False)

    def load_from_file(self, path: str) -> bool:
        """
        从 JSON 文件加载配置

        Args:
            path: 配置文件路径

        Returns:
            True 如果成功
        """
        try:
            config_path = Path(path)
            if not config_path.exists():
                logger.warning(f"Config file not found: {path}")
                return False

            with open(config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)

            if not isinstance(data, dict):
                logger.error(f"Config root must be an object: {path}")
                return False

            # 更新各部分配置
            if 'network' in data:
                self._update_dataclass(self.network, data['network'])

            if 'movement' in data:
                self._update_dataclass(self.movement, data['movement'])

            if 'interpolation' in data:
                self._update_dataclass(self.interpolation, data['interpolation'])

            self._config_path = path
            self._loaded = True
            logger.info(f"Loaded config: {path}")
            return True

        except json.JSONDecodeError as e:
            logger.error(f"Config JSON parse error: {e}")
            return False
        except OSError as e:
            logger.error(f"Failed to load config: {e}")
            return False

    def save_to_file(self, path: str) -> bool:
        """
        保存配置到 JSON 文件

        Args:
            path: 配置文件路径

        Returns:
            True 如果成功
        """
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

            logger.info(f"Saved config: {path}")
            return True

        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def reload(self) -> bool:
        """
        重新加载配置文件

        Returns:
            True 如果成功
        """
        if self._config_path:
            return self.load_from_file(self._config_path)
        return False

    @staticmethod
    def _update_dataclass(obj, data: dict):
        """更新 dataclass 对象的属性，忽略未知键"""
        if not isinstance(data, dict):
            return
        names = {f.name for f in fields(obj)}
        for key, value in data.items():
            if key in names:
                setattr(obj, key, value)

    def to_dict(self) -> dict:
        """转换为字典"""
        return {
            'network': asdict(self.network),
            'movement': asdict(self.movement),
            'interpolation': asdict(self.interpolation),
        }

    def __str__(self) -> str:
        lines = ["=== Client Config ==="]
        lines.append(f"Server: {self.network.server_ip}:{self.network.server_port}")
        lines.append(
            f"Timeouts: handshake={self.network.handshake_timeout}s, "
            f"heartbeat={self.network.heartbeat_interval}s, "
            f"connection={self.network.connection_timeout}s"
        )
        lines.append(f"Reconnect delays: {self.network.reconnect_delays}")
        lines.append(
            f"Interpolation: rate={self.interpolation.interpolation_rate}, "
            f"extrapolation_limit={self.interpolation.extrapolation_limit}s"
        )
        return '\n'.join(lines)


def load_config(path: str) -> Config:
    """
    加载指定配置文件

    文件不存在或格式错误时返回默认配置。

    Args:
        path: 配置文件路径

    Returns:
        新的 Config 实例
    """
    config = Config()
    config.load_from_file(path)
    return config
