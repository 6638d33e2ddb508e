import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

from agent_turn_loop.commands.router import CommandRouter


class CommandRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.on_help = AsyncMock()
        self.on_usage = AsyncMock()
        self.on_session = AsyncMock()
        self.on_unknown = MagicMock()
        self.router = CommandRouter(
            on_help=self.on_help,
            on_usage=self.on_usage,
            on_session=self.on_session,
            on_unknown=self.on_unknown,
        )

    def test_plain_text_is_not_a_command(self) -> None:
        self.assertFalse(asyncio.run(self.router.try_handle("hello /help")))

    def test_routes_known_commands(self) -> None:
        self.assertTrue(asyncio.run(self.router.try_handle("  /help ")))
        self.assertTrue(asyncio.run(self.router.try_handle("/usage")))
        self.assertTrue(asyncio.run(self.router.try_handle("/session list 5")))

        self.on_help.assert_awaited_once()
        self.on_usage.assert_awaited_once()
        self.on_session.assert_awaited_once_with("/session list 5")

    def test_unknown_command(self) -> None:
        self.assertTrue(asyncio.run(self.router.try_handle("/sessions")))
        self.on_unknown.assert_called_once_with("/sessions")
        self.on_session.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
