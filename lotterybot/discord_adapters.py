"""discord.py implementations of the membership source and notifier."""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Iterable, Optional, Set

import discord

from .errors import TransientFetchError
from .models import Candidate, Participant, RerollRecord
from .notifications import Notification, NotificationKind

log = logging.getLogger(__name__)

_MAX_FIELD_LENGTH = 1024


def member_to_candidate(member: discord.Member) -> Candidate:
    return Candidate(
        id=member.id,
        username=member.name,
        display_name=member.display_name,
        role_ids=frozenset(role.id for role in member.roles),
        is_bot=member.bot,
    )


def _mentions(participants: Iterable[Participant]) -> str:
    text = " ".join(f"<@{participant.id}>" for participant in participants)
    if len(text) > _MAX_FIELD_LENGTH:
        text = text[: _MAX_FIELD_LENGTH - 3].rsplit(" ", 1)[0] + "..."
    return text or "None"


class DiscordMembershipSource:
    """Reads role membership from the guild member cache."""

    def __init__(self, bot: discord.Client, guild_id: int) -> None:
        self.bot = bot
        self.guild_id = guild_id

    def _guild(self) -> discord.Guild:
        guild = self.bot.get_guild(self.guild_id)
        if guild is None:
            raise TransientFetchError(f"Guild {self.guild_id} is not available yet.")
        return guild

    async def fetch_members_with_role(self, role_id: int) -> Set[Candidate]:
        guild = self._guild()
        role = guild.get_role(role_id)
        if role is None:
            log.warning("Role %s not found in guild %s", role_id, guild.id)
            return set()
        return {member_to_candidate(member) for member in role.members}

    async def refresh(self) -> None:
        guild = self._guild()
        try:
            await guild.chunk(cache=True)
        except (discord.HTTPException, discord.ClientException) as exc:
            raise TransientFetchError(f"Member chunk request failed: {exc}") from exc


class DiscordNotifier:
    """Sends lottery notifications as embeds to text channels."""

    def __init__(self, bot: discord.Client, timezone: tzinfo) -> None:
        self.bot = bot
        self.timezone = timezone

    async def send_notification(self, channel_id: int, payload: Notification) -> None:
        channel = await self._fetch_text_channel(channel_id)
        if channel is None:
            log.warning(
                "Channel %s unavailable for %s notification", channel_id, payload.kind.value
            )
            return

        if payload.kind is NotificationKind.LOG:
            await channel.send(payload.message or "")
            return

        content = " ".join(f"<@&{role_id}>" for role_id in payload.ping_role_ids)
        await channel.send(
            content=content or None,
            embed=self.build_embed(payload),
            allowed_mentions=discord.AllowedMentions(
                everyone=False,
                users=True,
                roles=[discord.Object(role_id) for role_id in payload.ping_role_ids],
            ),
        )

    def build_embed(self, payload: Notification) -> discord.Embed:
        lottery = payload.lottery
        title = lottery.name if lottery else "Lottery"
        if payload.kind is NotificationKind.FINAL_WARNING:
            embed = discord.Embed(
                title=title,
                description="Last call! Submissions close soon.",
                color=discord.Color.orange(),
            )
        elif payload.kind is NotificationKind.CLOSING_WARNING:
            embed = discord.Embed(
                title=title,
                description="Submissions are now closed. The draw starts shortly.",
                color=discord.Color.red(),
            )
        elif payload.kind is NotificationKind.NO_PARTICIPANTS:
            embed = discord.Embed(
                title=title,
                description="Nobody was eligible for this draw, so there are no winners.",
                color=discord.Color.dark_gray(),
            )
        elif payload.kind is NotificationKind.REROLL and isinstance(payload.result, RerollRecord):
            record = payload.result
            embed = discord.Embed(
                title=record.lottery_name,
                description="Additional winners have been drawn.",
                color=discord.Color.purple(),
            )
            embed.add_field(name="New Winner(s)", value=_mentions(record.new_winners), inline=False)
            embed.add_field(
                name="Previous Winners", value=_mentions(record.prior_winners), inline=False
            )
            embed.add_field(
                name="Remaining Pool", value=str(record.reroll_participant_count), inline=True
            )
            embed.set_footer(text=f"Reroll ID: {record.lottery_id}")
            return embed
        else:
            result = payload.result
            embed = discord.Embed(
                title=title,
                description="The draw is complete.",
                color=discord.Color.green(),
            )
            if result is not None and not isinstance(result, RerollRecord):
                embed.add_field(name="Winner(s)", value=_mentions(result.winners), inline=False)
                embed.add_field(
                    name="Participants", value=str(result.participant_count), inline=True
                )

        if payload.next_draw_at is not None:
            embed.add_field(
                name="Next Draw", value=self._format_time(payload.next_draw_at), inline=True
            )
        if lottery:
            embed.set_footer(text=f"Lottery ID: {lottery.id}")
        return embed

    def _format_time(self, value: datetime) -> str:
        return value.astimezone(self.timezone).strftime("%Y-%m-%d %H:%M %Z")

    async def _fetch_text_channel(
        self, channel_id: int
    ) -> Optional[discord.TextChannel]:
        channel = self.bot.get_channel(channel_id)
        if isinstance(channel, discord.TextChannel):
            return channel
        try:
            fetched = await self.bot.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException):
            return None
        return fetched if isinstance(fetched, discord.TextChannel) else None
