"""
Core protocol module: vectors, messages, wire codec and configuration
"""

from .vector import Vec3, distance
from .messages import Envelope, PAYLOAD_TYPES
from .codec import DecodeError, decode, encode
from .config import Config, load_config

__all__ = [
    'Vec3', 'distance',
    'Envelope', 'PAYLOAD_TYPES',
    'DecodeError', 'decode', 'encode',
    'Config', 'load_config',
]
