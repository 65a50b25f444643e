"""
Wire codec for the packet envelope

信封编码为一个 msgpack map：
    {1: seq, <TAG>: {字段名: 值, ...}}

负载内缺失的字段使用默认值；未知的顶层字段被忽略。
"""

import dataclasses
import logging
from typing import Any

import msgpack

from .messages import Envelope, PAYLOAD_TYPES, SEQ_FIELD
from .vector import Vec3

logger = logging.getLogger(__name__)

UINT32_MAX = 0xFFFFFFFF
MAX_DATAGRAM_SIZE = 64 * 1024


class DecodeError(ValueError):
    """数据报无法解码"""


def encode(envelope: Envelope) -> bytes:
    """
    编码信封

    Args:
        envelope: 信封，payload 必须是 PAYLOAD_TYPES 中的类型

    Returns:
        msgpack 字节

    Raises:
        ValueError: 序列号越界或负载类型未知
    """
    seq = envelope.sequence
    if not isinstance(seq, int) or seq < 0 or seq > UINT32_MAX:
        raise ValueError(f"Sequence out of uint32 range: {seq}")

    payload = envelope.payload
    if payload is None or PAYLOAD_TYPES.get(getattr(payload, 'TAG', None)) is not type(payload):
        raise ValueError(f"Unknown payload type: {type(payload).__name__}")

    body = {}
    for f in dataclasses.fields(payload):
        body[f.name] = _to_wire(getattr(payload, f.name))

    return msgpack.packb({SEQ_FIELD: seq, payload.TAG: body}, use_bin_type=True)


def decode(data: bytes) -> Envelope:
    """
    解码数据报

    Args:
        data: 原始字节

    Returns:
        Envelope

    Raises:
        DecodeError: 格式错误
    """
    if len(data) > MAX_DATAGRAM_SIZE:
        raise DecodeError(f"Datagram too large: {len(data)} bytes")

    try:
        raw = msgpack.unpackb(data, raw=False, strict_map_key=False)
    except Exception as e:
        raise DecodeError(f"Invalid msgpack format: {e}") from e

    if not isinstance(raw, dict):
        raise DecodeError(f"Envelope must be a map, got {type(raw).__name__}")

    seq = raw.get(SEQ_FIELD, 0)
    if isinstance(seq, bool) or not isinstance(seq, int) or not 0 <= seq <= UINT32_MAX:
        raise DecodeError(f"Invalid sequence: {seq!r}")

    tags = [key for key in raw if key in PAYLOAD_TYPES]
    if len(tags) > 1:
        raise DecodeError(f"Envelope carries {len(tags)} payloads")

    if not tags:
        unknown = [key for key in raw if key != SEQ_FIELD]
        if unknown:
            logger.debug(f"Envelope seq={seq} has only unknown fields: {unknown}")
        return Envelope(sequence=seq)

    tag = tags[0]
    return Envelope(sequence=seq, payload=_payload_from_wire(PAYLOAD_TYPES[tag], raw[tag]))


# ==================== 内部转换 ====================

def _to_wire(value: Any) -> Any:
    if isinstance(value, Vec3):
        return value.to_dict()
    if isinstance(value, list):
        return list(value)
    return value


def _payload_from_wire(cls, body: Any):
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise DecodeError(f"{cls.NAME} body must be a map")

    kwargs = {}
    for f in dataclasses.fields(cls):
        if f.name not in body or body[f.name] is None:
            continue
        kwargs[f.name] = _field_from_wire(cls.NAME, f, body[f.name])
    return cls(**kwargs)


def _field_from_wire(payload_name: str, f: dataclasses.Field, value: Any) -> Any:
    where = f"{payload_name}.{f.name}"

    if f.type is str:
        if not isinstance(value, str):
            raise DecodeError(f"{where}: expected string")
        return value

    if f.type is bool:
        if not isinstance(value, bool):
            raise DecodeError(f"{where}: expected bool")
        return value

    if f.type is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise DecodeError(f"{where}: expected number")
        return float(value)

    if f.type is Vec3:
        if not isinstance(value, dict):
            raise DecodeError(f"{where}: expected {{x, y, z}} map")
        try:
            return Vec3.from_dict(value)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"{where}: {e}") from e

    # List[str]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DecodeError(f"{where}: expected list of strings")
    return list(value)
