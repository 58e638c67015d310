"""
Discord gateway client: slash commands and notification delivery.

RelayBot registers /subscribe, /unsubscribe and /status on an app command tree
and forwards them to CommandHandler. DiscordDelivery implements the
dispatcher's delivery contract on top of the same client.
"""

import asyncio
from typing import Awaitable, Optional

import discord
import structlog
from discord import app_commands

from .commands import (
    PRODUCT_NAME,
    REPLY_COMMAND_FAILED,
    REPLY_STATUS_FAILED,
    CommandHandler,
)
from .dispatcher import EmbedSpec, Notification
from .errors import DeliveryError, error_fields

log = structlog.get_logger()

TYPE_OPTION_CHOICES = [
    app_commands.Choice(name="收購", value="buy"),
    app_commands.Choice(name="販售", value="sell"),
    app_commands.Choice(name="全部", value="both"),
]

NOTIFICATION_MENTIONS = discord.AllowedMentions(users=True, roles=False, everyone=False)


def classify_discord_error(exc: discord.DiscordException) -> DeliveryError:
    """Map a discord.py exception onto a DeliveryError code."""
    if isinstance(exc, discord.Forbidden):
        code = "forbidden"
    elif isinstance(exc, discord.NotFound):
        code = "not_found"
    elif isinstance(exc, discord.HTTPException):
        code = "rate_limited" if exc.status == 429 else f"http_{exc.status}"
    else:
        code = "discord_error"
    return DeliveryError(str(exc) or type(exc).__name__, code=code)


def build_embed(spec: EmbedSpec) -> discord.Embed:
    embed = discord.Embed(title=spec.title, description=spec.description, color=spec.color)
    embed.add_field(name=spec.field_name, value=spec.field_value, inline=True)
    return embed


class DiscordDelivery:
    """Sends rendered notifications to Discord text channels."""

    def __init__(self, client: discord.Client):
        self._client = client

    async def send(self, channel_id: str, notification: Notification) -> None:
        try:
            cid = int(channel_id)
        except ValueError as exc:
            raise DeliveryError(f"invalid channel id {channel_id!r}", code="invalid_channel_id") from exc

        try:
            channel = self._client.get_channel(cid)
            if channel is None:
                channel = await self._client.fetch_channel(cid)
        except discord.DiscordException as exc:
            raise classify_discord_error(exc) from exc

        if not isinstance(channel, discord.abc.Messageable):
            raise DeliveryError(
                f"channel {channel_id} cannot receive messages",
                code="channel_unavailable",
            )

        try:
            await channel.send(
                content=notification.text_body,
                embed=build_embed(notification.embed),
                allowed_mentions=NOTIFICATION_MENTIONS,
            )
        except discord.DiscordException as exc:
            raise classify_discord_error(exc) from exc


class RelayBot(discord.Client):
    """Discord client carrying the subscription slash commands."""

    def __init__(self, handler: CommandHandler, guild_id: Optional[int] = None):
        super().__init__(intents=discord.Intents.default())
        self.tree = app_commands.CommandTree(self)
        self.ready_event = asyncio.Event()
        self._handler = handler
        self._guild = discord.Object(id=guild_id) if guild_id else None
        self._register_commands()

    async def setup_hook(self) -> None:
        try:
            if self._guild:
                self.tree.copy_global_to(guild=self._guild)
                synced = await self.tree.sync(guild=self._guild)
            else:
                synced = await self.tree.sync()
        except discord.HTTPException as exc:
            log.error("discord.command_sync_failed", **error_fields(classify_discord_error(exc)))
            return
        log.info("discord.commands_synced", count=len(synced), guild=getattr(self._guild, "id", None))

    async def on_ready(self) -> None:
        log.info("discord.ready", user=str(self.user))
        self.ready_event.set()

    def _register_commands(self) -> None:
        handler = self._handler

        @app_commands.command(name="subscribe", description=f"訂閱 {PRODUCT_NAME}（合併模式）")
        @app_commands.describe(keywords="關鍵字 (用逗號分隔)", types="訊息類型")
        @app_commands.choices(types=TYPE_OPTION_CHOICES)
        async def subscribe(
            interaction: discord.Interaction,
            keywords: str,
            types: Optional[app_commands.Choice[str]] = None,
        ) -> None:
            if interaction.channel_id is None:
                await interaction.response.send_message("❌ 無法取得頻道資訊")
                return
            await self._run_command(
                interaction,
                "subscribe",
                handler.subscribe(
                    str(interaction.user.id),
                    str(interaction.channel_id),
                    keywords,
                    types.value if types else None,
                ),
            )

        @app_commands.command(name="unsubscribe", description=f"取消訂閱 {PRODUCT_NAME}")
        @app_commands.describe(
            keywords="要取消的關鍵字 (用逗號分隔，留空表示取消所有)",
            types="要取消的訊息類型",
        )
        @app_commands.choices(types=TYPE_OPTION_CHOICES)
        async def unsubscribe(
            interaction: discord.Interaction,
            keywords: Optional[str] = None,
            types: Optional[app_commands.Choice[str]] = None,
        ) -> None:
            await self._run_command(
                interaction,
                "unsubscribe",
                handler.unsubscribe(
                    str(interaction.user.id),
                    keywords,
                    types.value if types else None,
                ),
            )

        @app_commands.command(name="status", description="查看訂閱狀態")
        async def status(interaction: discord.Interaction) -> None:
            # Deferred first so a busy event loop cannot expire the interaction
            await interaction.response.defer(ephemeral=True)
            await self._run_command(
                interaction,
                "status",
                handler.status(str(interaction.user.id)),
                failure_reply=REPLY_STATUS_FAILED,
            )

        for command in (subscribe, unsubscribe, status):
            self.tree.add_command(command)

    async def _run_command(
        self,
        interaction: discord.Interaction,
        name: str,
        reply: Awaitable[str],
        failure_reply: str = REPLY_COMMAND_FAILED,
    ) -> None:
        context = {
            "command": name,
            "user_id": str(interaction.user.id),
            "channel_id": str(interaction.channel_id),
            "guild_id": str(interaction.guild_id),
        }
        try:
            content = await reply
            log.info("discord.command", **context)
        except Exception as exc:
            log.error("discord.command_failed", **context, **error_fields(exc))
            content = failure_reply

        try:
            if interaction.response.is_done():
                await interaction.edit_original_response(content=content)
            else:
                await interaction.response.send_message(content)
        except discord.DiscordException as exc:
            log.error("discord.reply_failed", **context, **error_fields(classify_discord_error(exc)))
