"""
Unit tests for vectors, protocol messages, wire codec and configuration
"""

import json

import msgpack
import pytest

from core.codec import DecodeError, UINT32_MAX, decode, encode
from core.config import Config, load_config
from core.messages import (
    ChatMessage,
    ClientPosition,
    Envelope,
    HandshakeRequest,
    HandshakeResponse,
    LobbyJoinBroadcast,
    PAYLOAD_TYPES,
    ServerStatus,
    UsernameResponse,
)
from core.vector import Vec3, ZERO, distance


# ==================== Vec3 测试 ====================

class TestVec3:
    """Vec3 测试"""

    def test_arithmetic(self):
        """测试向量运算"""
        a = Vec3(1.0, 2.0, 3.0)
        b = Vec3(0.5, 0.5, 0.5)

        assert a + b == Vec3(1.5, 2.5, 3.5)
        assert a - b == Vec3(0.5, 1.5, 2.5)
        assert a * 2 == Vec3(2.0, 4.0, 6.0)
        assert 2 * a == Vec3(2.0, 4.0, 6.0)
        assert a / 2 == Vec3(0.5, 1.0, 1.5)

    def test_magnitude_and_distance(self):
        """测试长度和距离"""
        assert Vec3(3.0, 4.0, 0.0).magnitude() == pytest.approx(5.0)
        assert distance(Vec3(1.0, 0.0, 0.0), Vec3(1.0, 0.0, 2.0)) == pytest.approx(2.0)

    def test_lerp_clamped(self):
        """测试插值因子被限制在 [0, 1]"""
        target = Vec3(10.0, 0.0, 0.0)

        assert ZERO.lerp(target, 0.25) == Vec3(2.5, 0.0, 0.0)
        assert ZERO.lerp(target, 3.0) == target
        assert ZERO.lerp(target, -1.0) == ZERO

    def test_from_dict_missing_components(self):
        """测试缺失分量为 0"""
        assert Vec3.from_dict({'x': 1}) == Vec3(1.0, 0.0, 0.0)

    def test_immutable(self):
        """测试向量不可变"""
        v = Vec3(1.0, 2.0, 3.0)
        with pytest.raises(Exception):
            v.x = 5.0


# ==================== 消息测试 ====================

class TestMessages:
    """协议消息测试"""

    def test_tags_are_stable(self):
        """测试字段编号"""
        expected = {
            2: 'handshake_request', 3: 'handshake_response',
            4: 'heartbeat', 5: 'heartbeat_ack',
            6: 'client_position', 7: 'chat_message',
            8: 'lobby_join_broadcast', 9: 'username_prompt',
            10: 'username_submission', 11: 'username_response',
            12: 'reconnection_request', 13: 'reconnection_response',
            99: 'server_status',
        }
        assert {tag: cls.NAME for tag, cls in PAYLOAD_TYPES.items()} == expected

    def test_pending_handshake(self):
        """测试两阶段握手的 pending 响应"""
        assert HandshakeResponse('pending', 'pending').is_pending
        assert not HandshakeResponse('pending', 'pub').is_pending
        assert not HandshakeResponse('priv', 'pub').is_pending

    def test_envelope_payload_name(self):
        """测试信封负载名"""
        assert Envelope(1, ChatMessage('a', 'hi')).payload_name == 'chat_message'
        assert Envelope(1).payload_name == 'none'
        assert Envelope(1).payload_type is None


# ==================== 编解码测试 ====================

class TestCodec:
    """线格式编解码测试"""

    def test_wire_layout(self):
        """测试信封编码为 {1: seq, TAG: {字段: 值}}"""
        data = encode(Envelope(7, LobbyJoinBroadcast('pub', '#FF0000', Vec3(1.0, 2.0, 3.0), True)))
        raw = msgpack.unpackb(data, raw=False, strict_map_key=False)

        assert raw == {
            1: 7,
            8: {
                'public_id': 'pub',
                'color_hex': '#FF0000',
                'position': {'x': 1.0, 'y': 2.0, 'z': 3.0},
                'is_local_player': True,
            },
        }

    def test_decode_position(self):
        """测试解码位置更新，整数时间戳转换为浮点"""
        data = msgpack.packb({1: 3, 6: {
            'client_id': 'bob',
            'position': {'x': 1.5, 'y': 0.0, 'z': -2.0},
            'velocity': {'x': 1.0},
            'timestamp': 12,
        }}, use_bin_type=True)

        env = decode(data)

        assert env.sequence == 3
        assert env.payload == ClientPosition('bob', Vec3(1.5, 0.0, -2.0), Vec3(1.0, 0.0, 0.0), 12.0)
        assert isinstance(env.payload.timestamp, float)

    def test_missing_fields_use_defaults(self):
        """测试缺失字段使用默认值"""
        env = decode(msgpack.packb({1: 1, 11: {'username': 'Alice'}}, use_bin_type=True))

        assert env.payload == UsernameResponse(username='Alice')
        assert env.payload.suggestions == []

    def test_suggestions_list(self):
        """测试字符串列表字段"""
        original = UsernameResponse('Alice', False, 'taken', ['Alice1', 'Alice2'])
        assert decode(encode(Envelope(2, original))).payload == original

    def test_missing_sequence_defaults_to_zero(self):
        """测试缺失序列号"""
        env = decode(msgpack.packb({99: {'message': 'hello'}}, use_bin_type=True))

        assert env.sequence == 0
        assert env.payload == ServerStatus(message='hello')

    def test_unknown_fields_only(self):
        """测试只有未知字段的信封没有负载"""
        env = decode(msgpack.packb({1: 4, 50: {'foo': 1}}, use_bin_type=True))

        assert env.sequence == 4
        assert env.payload is None

    def test_unknown_fields_ignored_next_to_payload(self):
        """测试未知字段与已知负载共存"""
        env = decode(msgpack.packb({1: 4, 50: 'x', 2: {'client_name': 'c'}}, use_bin_type=True))
        assert env.payload == HandshakeRequest('c')

    def test_multiple_payloads_rejected(self):
        """测试多个负载视为格式错误"""
        data = msgpack.packb({1: 1, 4: {'client_id': 'a'}, 5: {'client_id': 'a'}}, use_bin_type=True)
        with pytest.raises(DecodeError):
            decode(data)

    @pytest.mark.parametrize('data', [
        b'\xc1',
        b'',
        msgpack.packb([1, 2, 3]),
        msgpack.packb({1: -1, 4: {}}),
        msgpack.packb({1: UINT32_MAX + 1, 4: {}}),
        msgpack.packb({1: 'one', 4: {}}),
        msgpack.packb({1: 1, 3: {'private_id': 5}}),
        msgpack.packb({1: 1, 6: {'position': [1, 2, 3]}}),
        msgpack.packb({1: 1, 11: {'is_accepted': 'yes'}}),
        msgpack.packb({1: 1, 7: 'not a map'}),
    ])
    def test_malformed_rejected(self, data):
        """测试格式错误的数据报"""
        with pytest.raises(DecodeError):
            decode(data)

    def test_oversized_rejected(self):
        """测试超大数据报"""
        with pytest.raises(DecodeError):
            decode(b'\x00' * (64 * 1024 + 1))

    def test_encode_rejects_bad_sequence(self):
        """测试序列号越界"""
        with pytest.raises(ValueError):
            encode(Envelope(-1, HandshakeRequest()))
        with pytest.raises(ValueError):
            encode(Envelope(UINT32_MAX + 1, HandshakeRequest()))

    def test_encode_rejects_missing_payload(self):
        """测试没有负载的信封不能编码"""
        with pytest.raises(ValueError):
            encode(Envelope(1))
        with pytest.raises(ValueError):
            encode(Envelope(1, {'client_name': 'x'}))


# ==================== 配置测试 ====================

class TestConfig:
    """配置测试"""

    def test_defaults(self):
        """测试默认值"""
        config = Config()

        assert config.network.server_address == ('127.0.0.1', 9999)
        assert config.network.reconnect_delays == [5.0, 10.0, 15.0, 20.0, 25.0, 30.0]
        assert config.movement.send_interval == pytest.approx(0.05)
        assert config.interpolation.max_snapshots == 10

    def test_instances_are_independent(self):
        """测试默认列表不共享"""
        a, b = Config(), Config()
        a.network.reconnect_delays.append(99.0)
        assert b.network.reconnect_delays[-1] == 30.0

    def test_load_partial_file(self, tmp_path):
        """测试部分覆盖并忽略未知键"""
        path = tmp_path / 'client.json'
        path.write_text(json.dumps({
            'network': {'server_port': 7777, 'unknown_key': 1, 'server_address': 'x'},
            'movement': {'movement_speed': 8.0},
            'extra_section': {},
        }), encoding='utf-8')

        config = load_config(str(path))

        assert config.network.server_port == 7777
        assert config.network.server_ip == '127.0.0.1'
        assert config.movement.movement_speed == 8.0
        assert not hasattr(config.network, 'unknown_key')

    def test_invalid_json(self, tmp_path):
        """测试格式错误的配置文件"""
        path = tmp_path / 'bad.json'
        path.write_text('{not json', encoding='utf-8')

        config = Config()
        assert not config.load_from_file(str(path))
        assert config.network.server_port == 9999

    def test_non_object_root(self, tmp_path):
        """测试根不是对象"""
        path = tmp_path / 'list.json'
        path.write_text('[1, 2]', encoding='utf-8')
        assert not Config().load_from_file(str(path))

    def test_missing_file(self, tmp_path):
        """测试文件不存在"""
        assert not Config().load_from_file(str(tmp_path / 'nope.json'))

    def test_save_and_reload(self, tmp_path):
        """测试保存后重新加载"""
        path = str(tmp_path / 'saved.json')
        config = Config()
        config.network.heartbeat_interval = 2.5
        assert config.save_to_file(path)

        loaded = load_config(path)
        assert loaded.network.heartbeat_interval == 2.5

        with open(path, 'w', encoding='utf-8') as f:
            json.dump({'network': {'heartbeat_interval': 1.0}}, f)
        assert loaded.reload()
        assert loaded.network.heartbeat_interval == 1.0
