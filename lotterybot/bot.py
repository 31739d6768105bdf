from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .config import Config, ConfigError, load_config
from .discord_adapters import DiscordMembershipSource, DiscordNotifier
from .errors import ConfigurationError, EmptyPoolError, HistoryIndexError, PersistenceError
from .lottery_manager import LotteryManager
from .models import HistoryEntry, LotteryDefinition, RerollRecord
from .notifications import Notification, NotificationKind
from .storage import StateStorage


PERMISSION_LOG = logging.getLogger("lottery.permissions")
ENV_PATH = Path(".env")
_MESSAGE_LIMIT = 1900


def _load_env_file(path: Path = ENV_PATH) -> None:
    if not path.exists():
        return
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.strip()
        if value and ((value[0] == value[-1]) and value.startswith(("'", '"'))):
            value = value[1:-1]
        os.environ.setdefault(key, value)


def configure_logging(level: str) -> None:
    console_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / "log.txt", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)


class LotteryBot(commands.Bot):
    def __init__(self, config: Config, storage: StateStorage) -> None:
        intents = discord.Intents.default()
        intents.members = True

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            application_id=config.application_id,
        )
        self.config = config
        self.notifier = DiscordNotifier(self, config.tzinfo)
        self.manager = LotteryManager(
            config.lottery,
            storage,
            DiscordMembershipSource(self, config.guild_id),
            self.notifier,
            timezone=config.tzinfo,
            logger_channel_id=config.logging.logger_channel_id,
        )

    async def setup_hook(self) -> None:
        await self.manager.recover()
        await self.tree.sync()
        dev_guild_id = self.config.permissions.development_guild_id
        if dev_guild_id:
            guild = discord.Object(dev_guild_id)
            await self.tree.sync(guild=guild)

    async def on_ready(self) -> None:
        if self.user is None:
            return
        logging.getLogger(__name__).info("Logged in as %s (%s)", self.user, self.user.id)

    async def close(self) -> None:
        self.manager.stop()
        await self.manager.scheduler.drain()
        await super().close()


def is_admin(
    member: discord.Member,
    admin_roles: Iterable[int],
    *,
    base_permissions: Optional[discord.Permissions] = None,
) -> bool:
    guild = getattr(member, "guild", None)
    if guild is not None and getattr(guild, "owner_id", None) == member.id:
        return True
    permissions = base_permissions or getattr(member, "guild_permissions", None)
    if permissions and (permissions.administrator or permissions.manage_guild):
        return True
    allowed = {int(role_id) for role_id in admin_roles}
    return bool(allowed.intersection(role.id for role in member.roles))


async def admin_required(interaction: discord.Interaction, config: Config) -> Optional[str]:
    command_name = getattr(getattr(interaction, "command", None), "name", "unknown")
    user = interaction.user

    guild = interaction.guild
    if guild is None:
        PERMISSION_LOG.debug(
            "Denied command %s for user %s: non-guild context.", command_name, user.id
        )
        return "This command can only be used inside a guild."

    member: Optional[discord.Member] = user if isinstance(user, discord.Member) else None
    if member is None:
        try:
            member = await guild.fetch_member(user.id)
        except (discord.NotFound, discord.Forbidden, discord.HTTPException):
            member = None
    if member is None:
        PERMISSION_LOG.warning(
            "Denied command %s for user %s: unable to resolve guild member.",
            command_name,
            user.id,
        )
        return "You do not have permission to manage lotteries."

    if not is_admin(
        member,
        config.permissions.admin_roles,
        base_permissions=getattr(interaction, "permissions", None),
    ):
        PERMISSION_LOG.warning(
            "Denied command %s for user %s: missing lottery admin rights (roles=%s).",
            command_name,
            member.id,
            [role.id for role in member.roles],
        )
        return "You do not have permission to manage lotteries."

    PERMISSION_LOG.debug("Authorized command %s for user %s.", command_name, member.id)
    return None


def build_bot(config_path: Path) -> LotteryBot:
    _load_env_file()
    config = load_config(config_path)
    configure_logging(config.logging.level)
    storage = StateStorage(
        config.lottery.data_file,
        history_limit=config.lottery.history_limit,
        timezone=config.tzinfo,
    )
    return LotteryBot(config, storage)


def _format_lottery(lottery: LotteryDefinition, bot: LotteryBot) -> str:
    next_local = lottery.next_draw_at.astimezone(bot.config.tzinfo)
    cadence = "one-shot" if lottery.is_one_shot else f"every {lottery.frequency_days} day(s)"
    return (
        f"`{lottery.id}` **{lottery.name}** in <#{lottery.channel_id}>, "
        f"{lottery.winners_count} winner(s), {cadence}, next {next_local:%Y-%m-%d %H:%M %Z}"
    )


def _format_history_entry(index: int, entry: HistoryEntry, bot: LotteryBot) -> str:
    tz = bot.config.tzinfo
    if isinstance(entry, RerollRecord):
        return (
            f"{index}. `{entry.lottery_id}` {entry.lottery_name} "
            f"({entry.reroll_date.astimezone(tz):%Y-%m-%d %H:%M}), "
            f"{len(entry.new_winners)} new winner(s) from {entry.reroll_participant_count}"
        )
    return (
        f"{index}. `{entry.lottery_id}` {entry.lottery_name} "
        f"({entry.date.astimezone(tz):%Y-%m-%d %H:%M}), "
        f"{len(entry.winners)} winner(s) from {entry.participant_count}"
    )


def _chunk_lines(lines: List[str]) -> List[str]:
    chunks: List[str] = []
    current = ""
    for line in lines:
        if current and len(current) + len(line) + 1 > _MESSAGE_LIMIT:
            chunks.append(current)
            current = ""
        current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def register_commands(bot: LotteryBot) -> None:
    manager = bot.manager
    config = bot.config

    async def clan_autocomplete(
        interaction: discord.Interaction, current: str
    ) -> List[app_commands.Choice[str]]:
        lookup = current.lower()
        return [
            app_commands.Choice(name=clan.display_name, value=key)
            for key, clan in config.lottery.clans.items()
            if lookup in key.lower() or lookup in clan.display_name.lower()
        ][:25]

    @bot.tree.command(name="lottery-create", description="Create a recurring or one-shot lottery.")
    @app_commands.describe(
        target_role="Role members must hold to take part.",
        clan="Clan the lottery is limited to (or the server-wide option).",
        frequency="Days between draws; 0 for a single draw.",
        day="Day of the first draw (name, abbreviation, or 0-6 with Monday = 0).",
        hour="Hour of the draw (24h, server timezone).",
        minute="Minute of the draw.",
        winners="Number of winners to draw.",
        channel="Channel where the results are announced.",
    )
    @app_commands.autocomplete(clan=clan_autocomplete)
    async def lottery_create(
        interaction: discord.Interaction,
        target_role: discord.Role,
        clan: str,
        frequency: app_commands.Range[int, 0, 365],
        day: str,
        hour: app_commands.Range[int, 0, 23],
        minute: app_commands.Range[int, 0, 59],
        winners: app_commands.Range[int, 1, 100],
        channel: discord.TextChannel,
    ) -> None:
        error = await admin_required(interaction, config)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True)
        try:
            lottery = await manager.create(
                target_role_id=target_role.id,
                target_role_name=target_role.name,
                clan_key=clan,
                frequency_days=frequency,
                day_of_week=day,
                hour=hour,
                minute=minute,
                winners_count=winners,
                channel_id=channel.id,
                created_by=interaction.user.id,
            )
        except ConfigurationError as exc:
            await interaction.followup.send(str(exc), ephemeral=True)
            return
        except PersistenceError:
            await interaction.followup.send(
                "The lottery could not be saved. Check the bot logs.", ephemeral=True
            )
            return
        await interaction.followup.send(
            f"Lottery created: {_format_lottery(lottery, bot)}", ephemeral=True
        )

    @bot.tree.command(name="lottery-list", description="List active lotteries.")
    async def lottery_list(interaction: discord.Interaction) -> None:
        error = await admin_required(interaction, config)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        lotteries = manager.list_active()
        if not lotteries:
            await interaction.response.send_message("No active lotteries.", ephemeral=True)
            return
        chunks = _chunk_lines([_format_lottery(lottery, bot) for lottery in lotteries])
        await interaction.response.send_message(chunks[0], ephemeral=True)
        for chunk in chunks[1:]:
            await interaction.followup.send(chunk, ephemeral=True)

    @bot.tree.command(name="lottery-remove", description="Remove an active lottery.")
    @app_commands.describe(lottery_id="Identifier shown by /lottery-list.")
    async def lottery_remove(interaction: discord.Interaction, lottery_id: str) -> None:
        error = await admin_required(interaction, config)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        try:
            removed = await manager.remove(lottery_id.strip())
        except PersistenceError:
            await interaction.followup.send(
                "The lottery could not be removed from storage. Check the bot logs.",
                ephemeral=True,
            )
            return
        if not removed:
            await interaction.followup.send("Lottery not found.", ephemeral=True)
            return
        await interaction.followup.send(f"Lottery `{lottery_id}` removed.", ephemeral=True)

    @bot.tree.command(name="lottery-history", description="Show past draws and rerolls.")
    async def lottery_history(interaction: discord.Interaction) -> None:
        error = await admin_required(interaction, config)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        history = await manager.get_history()
        if not history:
            await interaction.followup.send("No draws recorded yet.", ephemeral=True)
            return
        lines = [
            _format_history_entry(position, entry, bot)
            for position, entry in enumerate(history, start=1)
        ]
        for chunk in _chunk_lines(lines):
            await interaction.followup.send(chunk, ephemeral=True)

    @bot.tree.command(
        name="lottery-reroll", description="Draw extra winners for a past lottery."
    )
    @app_commands.describe(
        index="Entry number shown by /lottery-history.",
        additional_winners="How many extra winners to draw.",
    )
    async def lottery_reroll(
        interaction: discord.Interaction,
        index: app_commands.Range[int, 1, 1000],
        additional_winners: app_commands.Range[int, 1, 100] = 1,
    ) -> None:
        error = await admin_required(interaction, config)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        try:
            record = await manager.reroll(
                index - 1, additional_winners, rerolled_by=interaction.user.id
            )
        except HistoryIndexError:
            await interaction.followup.send("No history entry with that number.", ephemeral=True)
            return
        except EmptyPoolError:
            await interaction.followup.send(
                "Every participant of that draw has already won.", ephemeral=True
            )
            return
        except PersistenceError:
            await interaction.followup.send(
                "The reroll could not be saved. Check the bot logs.", ephemeral=True
            )
            return
        if interaction.channel_id is not None:
            try:
                await bot.notifier.send_notification(
                    interaction.channel_id,
                    Notification(NotificationKind.REROLL, result=record),
                )
            except discord.HTTPException as exc:
                logging.getLogger(__name__).warning(
                    "Failed to announce reroll %s: %s", record.lottery_id, exc
                )
        await interaction.followup.send(
            f"Rerolled as `{record.lottery_id}`.", ephemeral=True
        )

    @bot.tree.command(
        name="lottery-history-remove", description="Delete an entry from the draw history."
    )
    @app_commands.describe(index="Entry number shown by /lottery-history.")
    async def lottery_history_remove(
        interaction: discord.Interaction, index: app_commands.Range[int, 1, 1000]
    ) -> None:
        error = await admin_required(interaction, config)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        try:
            entry = await manager.remove_history(index - 1)
        except HistoryIndexError:
            await interaction.followup.send("No history entry with that number.", ephemeral=True)
            return
        except PersistenceError:
            await interaction.followup.send(
                "The history could not be updated. Check the bot logs.", ephemeral=True
            )
            return
        await interaction.followup.send(
            f"History entry `{entry.history_id}` removed.", ephemeral=True
        )


async def main() -> None:
    parser = argparse.ArgumentParser(description="Discord Lottery Bot")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config") / "config.yaml",
        help="Path to the bot configuration file.",
    )
    args = parser.parse_args()

    try:
        bot = build_bot(args.config)
    except ConfigError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    register_commands(bot)

    async with bot:
        await bot.start(bot.config.token)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
