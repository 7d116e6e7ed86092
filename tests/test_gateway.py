"""
tests/test_gateway.py — Discord Gateway Adapter
================================================
:class:`DiscordGateway` against a mocked discord.py client: error
translation, idempotent deletes and restricted voice-channel overwrites.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from muster.services.exceptions import ExternalGatewayError
from muster.services.gateway import DiscordGateway, MessagingGateway
from conftest import run_async


def _http_error(cls, status):
    response = MagicMock(status=status, reason="error")
    return cls(response, "boom")


@pytest.fixture
def channel():
    ch = MagicMock()
    ch.send = AsyncMock(return_value=MagicMock(id=555))
    ch.delete = AsyncMock()
    message = MagicMock()
    message.delete = AsyncMock()
    message.edit = AsyncMock()
    ch.fetch_message = AsyncMock(return_value=message)
    return ch


@pytest.fixture
def bot(channel):
    b = MagicMock()
    b.get_channel.return_value = channel
    return b


class TestMessages:

    def test_send_returns_message_id(self, bot, channel):
        gateway = DiscordGateway(bot)
        assert run_async(gateway.send_message(1, content="hi")) == 555
        channel.send.assert_awaited_once_with(content="hi", embed=None)

    def test_send_failure_translated(self, bot, channel):
        channel.send.side_effect = _http_error(discord.Forbidden, 403)
        with pytest.raises(ExternalGatewayError):
            run_async(DiscordGateway(bot).send_message(1, content="hi"))

    def test_delete_missing_message_is_noop(self, bot, channel):
        channel.fetch_message.side_effect = _http_error(discord.NotFound, 404)
        run_async(DiscordGateway(bot).delete_message(1, 2))

    def test_delete_failure_translated(self, bot, channel):
        channel.fetch_message.return_value.delete.side_effect = _http_error(
            discord.HTTPException, 500
        )
        with pytest.raises(ExternalGatewayError):
            run_async(DiscordGateway(bot).delete_message(1, 2))

    def test_channel_fetched_when_not_cached(self, bot, channel):
        bot.get_channel.return_value = None
        bot.fetch_channel = AsyncMock(return_value=channel)
        run_async(DiscordGateway(bot).send_message(1, content="hi"))
        bot.fetch_channel.assert_awaited_once_with(1)


class TestChannels:

    def test_delete_missing_channel_is_noop(self, bot, channel):
        channel.delete.side_effect = _http_error(discord.NotFound, 404)
        run_async(DiscordGateway(bot).delete_channel(1, reason="done"))

    def test_restricted_voice_channel(self, bot):
        category = MagicMock(spec=discord.CategoryChannel)
        guild = MagicMock()
        guild.get_channel.return_value = category
        guild.create_voice_channel = AsyncMock(return_value=MagicMock(id=777))
        bot.get_guild.return_value = guild

        channel_id = run_async(DiscordGateway(bot).create_voice_channel(
            10, name="Raid", category_id=900, allowed_user_ids=[1, 2],
        ))

        assert channel_id == 777
        kwargs = guild.create_voice_channel.await_args.kwargs
        assert kwargs["category"] is category
        overwrites = kwargs["overwrites"]
        assert overwrites[guild.default_role].connect is False
        allowed = {target.id for target in overwrites if isinstance(target, discord.Object)}
        assert allowed == {1, 2}

    def test_open_voice_channel_has_no_overwrites(self, bot):
        guild = MagicMock()
        guild.create_voice_channel = AsyncMock(return_value=MagicMock(id=778))
        bot.get_guild.return_value = guild

        run_async(DiscordGateway(bot).create_voice_channel(10, name="Raid"))

        assert guild.create_voice_channel.await_args.kwargs["overwrites"] == {}

    def test_non_category_rejected(self, bot):
        guild = MagicMock()
        guild.get_channel.return_value = MagicMock(spec=discord.TextChannel)
        bot.get_guild.return_value = guild

        with pytest.raises(ExternalGatewayError):
            run_async(DiscordGateway(bot).create_voice_channel(10, name="Raid", category_id=5))


class TestRoles:

    @pytest.fixture
    def guild(self, bot):
        g = MagicMock()
        role = MagicMock(members=[MagicMock(id=1), MagicMock(id=2)])
        g.get_role.return_value = role
        member = MagicMock()
        member.add_roles = AsyncMock()
        member.remove_roles = AsyncMock()
        g.get_member.return_value = member
        bot.get_guild.return_value = g
        return g

    def test_role_member_ids(self, bot, guild):
        assert run_async(DiscordGateway(bot).role_member_ids(10, 42)) == {1, 2}

    def test_add_role(self, bot, guild):
        run_async(DiscordGateway(bot).add_role(10, 1, 42, reason="Top 10"))
        guild.get_member.return_value.add_roles.assert_awaited_once_with(
            guild.get_role.return_value, reason="Top 10"
        )

    def test_missing_role_raises(self, bot, guild):
        guild.get_role.return_value = None
        with pytest.raises(ExternalGatewayError):
            run_async(DiscordGateway(bot).role_member_ids(10, 42))

    def test_remove_from_departed_member_is_noop(self, bot, guild):
        guild.get_member.return_value = None
        guild.fetch_member = AsyncMock(side_effect=_http_error(discord.NotFound, 404))
        run_async(DiscordGateway(bot).remove_role(10, 1, 42))

    def test_remove_failure_translated(self, bot, guild):
        guild.get_member.return_value.remove_roles.side_effect = _http_error(
            discord.Forbidden, 403
        )
        with pytest.raises(ExternalGatewayError):
            run_async(DiscordGateway(bot).remove_role(10, 1, 42))


class TestInterface:

    def test_incomplete_gateway_cannot_be_instantiated(self):
        class SendOnly(MessagingGateway):
            async def send_message(self, channel_id, *, content=None, embed=None):
                return 1

        with pytest.raises(TypeError):
            SendOnly()
