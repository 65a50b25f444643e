"""
3D vector math for positions and velocities
"""

from dataclasses import dataclass
import math


@dataclass(frozen=True)
class Vec3:
    """
    不可变三维向量

    位置和速度都使用这个类型，与服务器协议中的 {x, y, z} 一一对应。
    """
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __add__(self, other: 'Vec3') -> 'Vec3':
        return Vec3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: 'Vec3') -> 'Vec3':
        return Vec3(self.x - other.x, self.y - other.y, self.z - other.z)

    def __mul__(self, scalar: float) -> 'Vec3':
        return Vec3(self.x * scalar, self.y * scalar, self.z * scalar)

    __rmul__ = __mul__

    def __truediv__(self, scalar: float) -> 'Vec3':
        return Vec3(self.x / scalar, self.y / scalar, self.z / scalar)

    def magnitude(self) -> float:
        """向量长度"""
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def lerp(self, target: 'Vec3', t: float) -> 'Vec3':
        """
        线性插值

        Args:
            target: 目标向量
            t: 插值因子，会被限制在 [0, 1]

        Returns:
            插值结果
        """
        t = max(0.0, min(1.0, t))
        return Vec3(
            self.x + (target.x - self.x) * t,
            self.y + (target.y - self.y) * t,
            self.z + (target.z - self.z) * t,
        )

    def to_dict(self) -> dict:
        return {'x': self.x, 'y': self.y, 'z': self.z}

    @classmethod
    def from_dict(cls, data: dict) -> 'Vec3':
        """从 {x, y, z} 字典创建，缺失分量为 0"""
        return cls(
            float(data.get('x', 0.0)),
            float(data.get('y', 0.0)),
            float(data.get('z', 0.0)),
        )

    def to_tuple(self) -> tuple:
        return (self.x, self.y, self.z)


ZERO = Vec3()


def distance(a: Vec3, b: Vec3) -> float:
    """
    计算两点间的欧氏距离

    Args:
        a: 点A
        b: 点B

    Returns:
        距离
    """
    return (a - b).magnitude()
