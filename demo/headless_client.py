"""
Headless demo client: connects to a lobby server and walks in a circle

用法:
    netsync-demo --host 127.0.0.1 --port 9999 --username Alice --duration 30
"""

import argparse
import asyncio
import logging
import math
from typing import List, Optional, Tuple

from core.config import Config, load_config
from core.messages import ChatMessage, LobbyJoinBroadcast, UsernameResponse
from client.game_client import ClientGameLoop, GameClient

logger = logging.getLogger(__name__)


def circle_input(t: float, period: float = 4.0) -> Tuple[float, float]:
    """
    绕圈移动的输入向量

    Args:
        t: 已运行时间（秒）
        period: 转一圈的时间（秒）

    Returns:
        单位长度的 (x, y) 输入
    """
    angle = 2.0 * math.pi * t / period
    return math.cos(angle), math.sin(angle)


class HeadlessBot:
    """无界面的演示机器人"""

    def __init__(self, client: GameClient, username: str, color_hex: str):
        self.client = client
        self.username = username
        self.color_hex = color_hex
        self.elapsed = 0.0
        self.joined = False

        client.on_username_prompt(self._on_prompt)
        client.on_username_response(self._on_username_response)
        client.on_connected(self._on_connected)
        client.on_disconnected(self._on_disconnected)
        client.on_player_joined(self._on_player_joined)
        client.on_player_left(self._on_player_left)
        client.on_chat(self._on_chat)

    def update(self, dt: float):
        """每帧调用：已加入大厅后绕圈移动"""
        self.elapsed += dt
        if self.joined:
            self.client.move(circle_input(self.elapsed), dt)

    def _on_prompt(self, message: str):
        logger.info(f"Server asks: {message} -> submitting {self.username}")
        self.client.submit_username(self.username)

    def _on_username_response(self, response: UsernameResponse):
        if not response.is_accepted and response.suggestions:
            logger.info(f"Username rejected, trying suggestion {response.suggestions[0]}")
            self.username = response.suggestions[0]
            self.client.submit_username(self.username)

    def _on_connected(self, private_id: str, public_id: str):
        logger.info(f"Joined as {public_id}")
        self.joined = self.client.send_lobby_join(self.color_hex)

    def _on_disconnected(self, reason: str):
        logger.info(f"Lost connection: {reason}")
        self.joined = False

    def _on_player_joined(self, join: LobbyJoinBroadcast):
        if not join.is_local_player:
            logger.info(f"Player {join.public_id} joined at {join.position.to_tuple()}")

    def _on_player_left(self, public_id: str):
        logger.info(f"Player {public_id} left")

    def _on_chat(self, message: ChatMessage):
        logger.info(f"[chat] {message.client_id}: {message.message}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Headless lobby client')
    parser.add_argument('--host', help='Server IP (overrides config)')
    parser.add_argument('--port', type=int, help='Server port (overrides config)')
    parser.add_argument('--username', default='PythonBot', help='Username to submit')
    parser.add_argument('--config', help='JSON config file')
    parser.add_argument('--duration', type=float, default=30.0, help='Run time in seconds')
    parser.add_argument('--color', default='#3FA7FF', help='Lobby colour')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """演示客户端命令行入口"""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = load_config(args.config) if args.config else Config()
    if args.host:
        config.network.server_ip = args.host
    if args.port:
        config.network.server_port = args.port

    client = GameClient(config)
    if not client.start():
        return 1

    bot = HeadlessBot(client, args.username, args.color)
    loop = ClientGameLoop(client)
    loop.on_update = bot.update

    if not config.network.enable_auto_reconnect:
        client.connect()

    try:
        asyncio.run(loop.run(duration=args.duration))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        logger.info(f"Prediction stats: {client.predictor.get_stats()}")
        client.stop()

    return 0


if __name__ == '__main__':
    raise SystemExit(main())
