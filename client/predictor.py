"""
Client-side prediction and server reconciliation
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Tuple

from core.config import MovementConfig
from core.vector import Vec3, ZERO, distance

logger = logging.getLogger(__name__)


@dataclass
class LocalMovementRecord:
    """一次本地移动的记录"""
    position: Vec3
    timestamp: float
    input_vector: Tuple[float, float]


@dataclass
class PredictionResult:
    """校正结果"""
    server_timestamp: float
    consumed: int          # 出队的历史记录数
    matched: bool          # 是否找到对应的本地记录
    error: float           # 预测位置与权威位置的距离
    corrected: bool        # 是否进行了硬校正


class ClientPredictor:
    """
    客户端预测和服务器校正

    核心功能：
    1. 本地立即应用移动输入（预测）
    2. 记录移动历史，最多 max_history 条，溢出时丢弃最旧的
    3. 收到服务器回显的权威位置时，消费时间戳不晚于服务器时间戳的记录，
       用最后一条与权威位置比较
    4. 误差超过阈值时直接对齐到权威位置并清空历史；否则容忍小误差，避免抖动
    """

    def __init__(self, config: MovementConfig, position: Vec3 = ZERO):
        """
        初始化预测器

        Args:
            config: 移动配置
            position: 初始位置
        """
        self.config = config
        self.position = position
        self.velocity = ZERO
        self.history: Deque[LocalMovementRecord] = deque(maxlen=config.max_history)

        self._last_send_time: Optional[float] = None

        # 统计
        self.prediction_count = 0
        self.reconcile_count = 0
        self.correction_count = 0
        self.last_result: Optional[PredictionResult] = None

    @property
    def is_moving(self) -> bool:
        return self.velocity != ZERO

    def reset(self, position: Vec3):
        """重置位置（例如出生点），清空历史"""
        self.position = position
        self.velocity = ZERO
        self.history.clear()

    def apply_input(self, input_vector: Tuple[float, float], dt: float, now: float) -> Vec3:
        """
        应用一帧移动输入

        输入向量 (x, y) 映射到水平面 (x, 0, y)。幅度不超过死区时视为静止。

        Args:
            input_vector: 输入向量
            dt: 帧时间（秒）
            now: 当前时间

        Returns:
            预测后的位置
        """
        ix, iy = input_vector
        magnitude = (ix * ix + iy * iy) ** 0.5

        if dt <= 0 or magnitude <= self.config.input_dead_zone:
            self.velocity = ZERO
            return self.position

        old_position = self.position
        movement = Vec3(ix, 0.0, iy) * (self.config.movement_speed * dt)
        self.position = old_position + movement
        self.velocity = (self.position - old_position) / dt

        self.history.append(LocalMovementRecord(
            position=self.position,
            timestamp=now,
            input_vector=(ix, iy),
        ))
        self.prediction_count += 1

        return self.position

    def on_server_position(self, server_position: Vec3, server_timestamp: float) -> PredictionResult:
        """
        收到本地玩家的权威位置，进行校正

        Args:
            server_position: 权威位置
            server_timestamp: 对应的时间戳

        Returns:
            校正结果
        """
        matching: Optional[LocalMovementRecord] = None
        consumed = 0

        while self.history and self.history[0].timestamp <= server_timestamp:
            matching = self.history.popleft()
            consumed += 1

        self.reconcile_count += 1

        if matching is None:
            self.last_result = PredictionResult(
                server_timestamp=server_timestamp,
                consumed=0,
                matched=False,
                error=0.0,
                corrected=False,
            )
            return self.last_result

        error = distance(matching.position, server_position)
        corrected = error > self.config.correction_threshold

        if corrected:
            logger.info(f"Server reconciliation: correcting position by {error:.3f}")
            self.position = server_position
            self.history.clear()
            self.correction_count += 1

        self.last_result = PredictionResult(
            server_timestamp=server_timestamp,
            consumed=consumed,
            matched=True,
            error=error,
            corrected=corrected,
        )
        return self.last_result

    def should_send(self, now: float) -> bool:
        """
        位置上报限速

        Returns:
            True 如果距离上次上报已超过发送间隔（并记录本次）
        """
        if self._last_send_time is not None and now - self._last_send_time < self.config.send_interval:
            return False
        self._last_send_time = now
        return True

    def get_stats(self) -> dict:
        """获取统计信息"""
        return {
            'prediction_count': self.prediction_count,
            'reconcile_count': self.reconcile_count,
            'correction_count': self.correction_count,
            'history_size': len(self.history),
            'last_error': self.last_result.error if self.last_result else 0.0,
        }
