"""
muster.services.gateway — Messaging Gateway
============================================

Every Discord side effect the lifecycle engine performs goes through a
:class:`MessagingGateway`.  Services receive one in their constructor, so
tests hand in a recording fake and the bot hands in
:class:`DiscordGateway`.

Contract for implementations:

- every failure surfaces as :class:`ExternalGatewayError`;
- deleting a message or channel that is already gone is a silent no-op;
- ids are plain ``int`` snowflakes in both directions.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING

import discord

from muster.services.exceptions import ExternalGatewayError

if TYPE_CHECKING:
    from discord.ext import commands

logger = logging.getLogger(__name__)


class MessagingGateway(ABC):
    """Interface for the Discord operations the engine needs."""

    @abstractmethod
    async def send_message(
        self,
        channel_id: int,
        *,
        content: str | None = None,
        embed: discord.Embed | None = None,
    ) -> int:
        """Post to a text channel and return the new message id."""

    @abstractmethod
    async def edit_message(
        self,
        channel_id: int,
        message_id: int,
        *,
        content: str | None = None,
        embed: discord.Embed | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def delete_message(self, channel_id: int, message_id: int) -> None:
        pass

    @abstractmethod
    async def send_direct_message(
        self,
        user_id: int,
        *,
        content: str | None = None,
        embed: discord.Embed | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def create_voice_channel(
        self,
        guild_id: int,
        *,
        name: str,
        category_id: int | None = None,
        allowed_user_ids: Iterable[int] | None = None,
    ) -> int:
        """Create a voice channel and return its id.

        With *allowed_user_ids* the channel is closed to ``@everyone`` and
        open to the listed members only.
        """

    @abstractmethod
    async def delete_channel(self, channel_id: int, *, reason: str | None = None) -> None:
        """Delete a channel or thread."""

    @abstractmethod
    async def fetch_member(self, guild_id: int, user_id: int) -> discord.Member | None:
        pass

    @abstractmethod
    async def role_member_ids(self, guild_id: int, role_id: int) -> set[int]:
        """Ids of the members currently holding the role."""

    @abstractmethod
    async def add_role(
        self, guild_id: int, user_id: int, role_id: int, *, reason: str | None = None
    ) -> None:
        pass

    @abstractmethod
    async def remove_role(
        self, guild_id: int, user_id: int, role_id: int, *, reason: str | None = None
    ) -> None:
        """Take the role away; a member who already left is a no-op."""


class DiscordGateway(MessagingGateway):
    """:class:`MessagingGateway` backed by a live discord.py client."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    async def _channel(self, channel_id: int):
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            channel = await self.bot.fetch_channel(channel_id)
        return channel

    async def _guild(self, guild_id: int) -> discord.Guild:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            guild = await self.bot.fetch_guild(guild_id)
        return guild

    async def send_message(self, channel_id, *, content=None, embed=None) -> int:
        try:
            channel = await self._channel(channel_id)
            message = await channel.send(content=content, embed=embed)
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to send message to channel {channel_id}: {exc}"
            ) from exc
        return message.id

    async def edit_message(self, channel_id, message_id, *, content=None, embed=None) -> None:
        try:
            channel = await self._channel(channel_id)
            message = await channel.fetch_message(message_id)
            await message.edit(content=content, embed=embed)
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to edit message {message_id}: {exc}"
            ) from exc

    async def delete_message(self, channel_id, message_id) -> None:
        try:
            channel = await self._channel(channel_id)
            message = await channel.fetch_message(message_id)
            await message.delete()
        except discord.NotFound:
            logger.debug("Message %d in channel %d already gone", message_id, channel_id)
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to delete message {message_id}: {exc}"
            ) from exc

    async def send_direct_message(self, user_id, *, content=None, embed=None) -> None:
        try:
            user = self.bot.get_user(user_id) or await self.bot.fetch_user(user_id)
            await user.send(content=content, embed=embed)
        except discord.HTTPException as exc:
            # Forbidden (DMs closed) lands here too
            raise ExternalGatewayError(f"Failed to DM user {user_id}: {exc}") from exc

    async def create_voice_channel(
        self, guild_id, *, name, category_id=None, allowed_user_ids=None
    ) -> int:
        try:
            guild = await self._guild(guild_id)
            category = None
            if category_id is not None:
                category = guild.get_channel(category_id) or await guild.fetch_channel(category_id)
                if not isinstance(category, discord.CategoryChannel):
                    raise ExternalGatewayError(
                        f"Channel {category_id} is not a category in guild {guild_id}"
                    )

            overwrites: dict = {}
            allowed = list(allowed_user_ids or [])
            if allowed:
                overwrites[guild.default_role] = discord.PermissionOverwrite(connect=False)
                for uid in allowed:
                    overwrites[discord.Object(id=uid)] = discord.PermissionOverwrite(
                        connect=True, speak=True
                    )

            channel = await guild.create_voice_channel(
                name=name,
                category=category,
                overwrites=overwrites,
                reason="Muster: event voice channel",
            )
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to create voice channel in guild {guild_id}: {exc}"
            ) from exc
        return channel.id

    async def delete_channel(self, channel_id, *, reason=None) -> None:
        try:
            channel = await self._channel(channel_id)
            await channel.delete(reason=reason)
        except discord.NotFound:
            logger.debug("Channel %d already gone", channel_id)
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to delete channel {channel_id}: {exc}"
            ) from exc

    async def fetch_member(self, guild_id, user_id) -> discord.Member | None:
        try:
            guild = await self._guild(guild_id)
            return guild.get_member(user_id) or await guild.fetch_member(user_id)
        except discord.NotFound:
            return None
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to fetch member {user_id} in guild {guild_id}: {exc}"
            ) from exc

    async def _role(self, guild_id: int, role_id: int) -> discord.Role:
        guild = await self._guild(guild_id)
        role = guild.get_role(role_id)
        if role is None:
            raise ExternalGatewayError(f"Role {role_id} not found in guild {guild_id}")
        return role

    async def role_member_ids(self, guild_id, role_id) -> set[int]:
        # Role.members reads the member cache; needs the members intent
        role = await self._role(guild_id, role_id)
        return {member.id for member in role.members}

    async def add_role(self, guild_id, user_id, role_id, *, reason=None) -> None:
        try:
            role = await self._role(guild_id, role_id)
            member = await self.fetch_member(guild_id, user_id)
            if member is None:
                raise ExternalGatewayError(f"Member {user_id} not found in guild {guild_id}")
            await member.add_roles(role, reason=reason)
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to add role {role_id} to {user_id}: {exc}"
            ) from exc

    async def remove_role(self, guild_id, user_id, role_id, *, reason=None) -> None:
        try:
            role = await self._role(guild_id, role_id)
            member = await self.fetch_member(guild_id, user_id)
            if member is None:
                logger.debug("Member %d left guild %d; nothing to remove", user_id, guild_id)
                return
            await member.remove_roles(role, reason=reason)
        except discord.HTTPException as exc:
            raise ExternalGatewayError(
                f"Failed to remove role {role_id} from {user_id}: {exc}"
            ) from exc
