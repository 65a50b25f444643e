"""
Remote entity snapshot buffering, extrapolation and smoothing
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from core.config import InterpolationConfig
from core.vector import Vec3, ZERO

logger = logging.getLogger(__name__)


@dataclass
class MovementSnapshot:
    """
    远程实体的一次位置采样

    属性:
        position / velocity: 服务器转发的位置和速度
        timestamp: 发送方时间戳，用于估算网络延迟和外推
        received_at: 本地收到的时间，用于清理过期快照
    """
    position: Vec3
    velocity: Vec3
    timestamp: float
    received_at: float


@dataclass
class RemoteEntity:
    """单个远程实体的插值数据"""
    entity_id: str
    snapshots: Deque[MovementSnapshot]
    current_position: Vec3 = ZERO
    target_position: Vec3 = ZERO
    velocity: Vec3 = ZERO
    last_update_time: float = 0.0
    has_position: bool = False


class RemoteInterpolator:
    """
    远程实体插值器

    每个实体维护最多 max_snapshots 条快照（先进先出），
    另外每帧清理超过 snapshot_max_age 秒的快照，两个上限同时生效。

    目标位置：
    - 至少两条快照时，network_delay = now - latest.timestamp，
      若 0 < network_delay < extrapolation_limit，
      target = latest.position + latest.velocity * network_delay（航位推测）；
      否则 target = latest.position
    - 只有一条快照时，target = 该快照位置

    渲染位置每帧以 interpolation_rate 指数平滑地逼近目标，
    速度由每帧位移除以帧时间得到。
    """

    def __init__(self, config: InterpolationConfig):
        self.config = config
        self.entities: Dict[str, RemoteEntity] = {}

    def _get_or_create(self, entity_id: str) -> RemoteEntity:
        entity = self.entities.get(entity_id)
        if entity is None:
            entity = RemoteEntity(
                entity_id=entity_id,
                snapshots=deque(maxlen=self.config.max_snapshots),
            )
            self.entities[entity_id] = entity
        return entity

    def set_initial_position(self, entity_id: str, position: Vec3):
        """
        设置实体的初始位置（例如大厅广播的出生点）

        已有快照的实体不受影响。
        """
        entity = self._get_or_create(entity_id)
        if entity.snapshots:
            return
        entity.current_position = position
        entity.target_position = position
        entity.has_position = True

    def push_snapshot(self, entity_id: str, position: Vec3, velocity: Vec3,
                      timestamp: float, now: float) -> Vec3:
        """
        加入一条快照并更新目标位置

        Args:
            entity_id: 实体ID
            position: 位置
            velocity: 速度
            timestamp: 发送方时间戳
            now: 当前时间

        Returns:
            新的目标位置
        """
        entity = self._get_or_create(entity_id)
        entity.snapshots.append(MovementSnapshot(
            position=position,
            velocity=velocity,
            timestamp=timestamp,
            received_at=now,
        ))
        entity.last_update_time = now

        if not entity.has_position:
            entity.current_position = position
            entity.has_position = True

        entity.target_position = self._compute_target(entity, now)
        return entity.target_position

    def compute_target(self, entity_id: str, now: float) -> Optional[Vec3]:
        """按当前时间计算实体的目标位置，实体不存在或没有快照时返回 None"""
        entity = self.entities.get(entity_id)
        if entity is None or not entity.snapshots:
            return None
        return self._compute_target(entity, now)

    def _compute_target(self, entity: RemoteEntity, now: float) -> Vec3:
        latest = entity.snapshots[-1]
        if len(entity.snapshots) < 2:
            return latest.position

        network_delay = now - latest.timestamp
        if 0.0 < network_delay < self.config.extrapolation_limit:
            return latest.position + latest.velocity * network_delay
        return latest.position

    def tick(self, now: float, dt: float):
        """
        每帧更新所有实体的渲染位置

        Args:
            now: 当前时间
            dt: 帧时间（秒）
        """
        for entity in self.entities.values():
            if dt > 0 and entity.has_position:
                old_position = entity.current_position
                entity.current_position = old_position.lerp(
                    entity.target_position, self.config.interpolation_rate * dt
                )
                entity.velocity = (entity.current_position - old_position) / dt

            self._cleanup_old_snapshots(entity, now)

    def _cleanup_old_snapshots(self, entity: RemoteEntity, now: float):
        while entity.snapshots and now - entity.snapshots[0].received_at > self.config.snapshot_max_age:
            entity.snapshots.popleft()

    def remove_entity(self, entity_id: str) -> bool:
        """移除实体（玩家离开）"""
        if self.entities.pop(entity_id, None) is None:
            return False
        logger.info(f"Removed movement data for disconnected player: {entity_id}")
        return True

    def clear(self):
        self.entities.clear()

    def get_position(self, entity_id: str) -> Optional[Vec3]:
        entity = self.entities.get(entity_id)
        return entity.current_position if entity else None

    def get_velocity(self, entity_id: str) -> Optional[Vec3]:
        entity = self.entities.get(entity_id)
        return entity.velocity if entity else None

    def get_target(self, entity_id: str) -> Optional[Vec3]:
        entity = self.entities.get(entity_id)
        return entity.target_position if entity else None

    def get_snapshots(self, entity_id: str) -> List[MovementSnapshot]:
        entity = self.entities.get(entity_id)
        return list(entity.snapshots) if entity else []

    def entity_ids(self) -> List[str]:
        return list(self.entities.keys())
