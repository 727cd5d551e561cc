import asyncio
import io
import logging
import signal

import discord

import config
import database
import ocr
from dm_cleanup import DMCleanupService
from errors import CollaboratorFailure
from logging_setup import setup_logging, tail_log
from notifications import DiscordNotifier, INSTRUCTIONS_TITLE, build_instructions_embed
from ranks import RankTable, load_rank_table
from roles import DiscordRoleGranter, assign_rank_role, remove_rank_roles
from verification import AttachmentRef, RankVerifier, Submission

logger = logging.getLogger("rankbot")

LIST_PAGE_SIZE = 10


# ============================================================
# Discord bot
# ============================================================
class RankBot(discord.Client):
    def __init__(self, table: RankTable):
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.guild_messages = True
        # Screenshots arrive as plain channel messages
        intents.message_content = True
        super().__init__(intents=intents)

        self.table = table
        self.tree = discord.app_commands.CommandTree(self)
        self.cleanup = DMCleanupService(ttl=config.DM_DELETE_AFTER_SECONDS)
        self.notifier = DiscordNotifier(self, self.cleanup)
        self.verifier: RankVerifier | None = None
        self._ready_once = False
        register_commands(self)

    async def setup_hook(self):
        await database.init_db()
        logger.info("Database initialized.")

    def build_verifier(self, guild_id: int) -> RankVerifier:
        return RankVerifier(
            table=self.table,
            ocr=ocr,
            store=database,
            roles=DiscordRoleGranter(self, guild_id, self.table),
            notifier=self.notifier,
        )

    async def on_ready(self):
        logger.info("Logged in as %s (ID: %s), in %d guild(s)", self.user, self.user.id, len(self.guilds))
        # on_ready fires again after every reconnect
        if self._ready_once:
            return
        self._ready_once = True

        channel = self.get_channel(config.RANK_CHANNEL_ID)
        if channel is None or not isinstance(channel, discord.TextChannel):
            logger.error("Rank channel %s not found or not a text channel", config.RANK_CHANNEL_ID)
            channel = None

        await self.start_services(channel.guild.id if channel else None)

        if channel is not None:
            await send_instructions(self, channel)

    async def start_services(self, guild_id: int | None) -> None:
        """Warm OCR, sync commands and sweep old DMs, then start taking screenshots."""
        # Warm up OCR models (reduces first screenshot latency)
        await ocr.warm_up()

        # Sync commands
        try:
            if config.DISCORD_GUILD_ID:
                guild_obj = discord.Object(id=config.DISCORD_GUILD_ID)
                self.tree.copy_global_to(guild=guild_obj)
                await self.tree.sync(guild=guild_obj)
                logger.info("Slash commands synced to guild %s.", config.DISCORD_GUILD_ID)
            else:
                await self.tree.sync()
                logger.info("Slash commands synced globally (may take time to appear).")
        except discord.HTTPException as e:
            logger.error("Failed to sync slash commands: %s", e)

        # DMs from previous runs have no timers anymore; sweep before any new ones go out
        await self.cleanup.bulk_cleanup(self)

        if guild_id is not None:
            self.verifier = self.build_verifier(guild_id)

    async def on_message(self, message: discord.Message):
        if message.author.bot or message.channel.id != config.RANK_CHANNEL_ID:
            return
        if self.verifier is None:
            logger.warning("Message in rank channel before the verifier is ready, ignoring")
            return

        submission = Submission(
            user_id=str(message.author.id),
            username=str(message.author),
            attachments=[
                AttachmentRef(url=a.url, filename=a.filename, content_type=a.content_type)
                for a in message.attachments
            ],
            delete_source=lambda: delete_quietly(message),
        )
        await self.verifier.process(submission)

    async def close(self):
        await self.cleanup.drain()
        await database.close_db()
        await super().close()


async def delete_quietly(message: discord.Message) -> None:
    try:
        await message.delete()
    except discord.NotFound:
        pass
    except discord.HTTPException as e:
        logger.warning("Failed to delete message %s: %s", message.id, e)


async def send_instructions(client: discord.Client, channel: discord.TextChannel, force: bool = False) -> bool:
    """Post the instructions embed unless one of the last 10 messages already is it."""
    if not force:
        try:
            async for msg in channel.history(limit=10):
                if msg.author.id == client.user.id and msg.embeds and msg.embeds[0].title == INSTRUCTIONS_TITLE:
                    logger.info("Instructions message already exists (%s), skipping", msg.id)
                    return False
        except discord.HTTPException as e:
            # Continue to send a new message if the check fails
            logger.warning("Failed to check for existing instructions message: %s", e)

    try:
        await channel.send(embed=build_instructions_embed(config.EXAMPLE_IMAGE_URL))
    except discord.HTTPException as e:
        logger.error("Failed to send verification channel instructions: %s", e)
        return False
    logger.info("Verification channel instructions sent")
    return True


def format_record(record) -> str:
    return (
        f"**{record.rank_name}** (level {record.level_detected})\n"
        f"Verified <t:{record.verified_at}:R>, updated <t:{record.updated_at}:R>"
    )


# -----------------------------
# Slash commands (all ephemeral)
# -----------------------------
def register_commands(bot: RankBot):
    tree = bot.tree
    admin = discord.app_commands.default_permissions(administrator=True)
    moderator = discord.app_commands.default_permissions(manage_roles=True)

    async def rank_autocomplete(interaction: discord.Interaction, current: str):
        query = current.lower()
        return [
            discord.app_commands.Choice(name=name, value=name)
            for name in bot.table.names()
            if query in name.lower()
        ][:25]  # Discord limit is 25 choices

    @tree.command(name="recheck", description="Re-apply a user's stored rank role")
    @discord.app_commands.describe(user="The user to recheck")
    @discord.app_commands.guild_only()
    @admin
    async def recheck_cmd(interaction: discord.Interaction, user: discord.Member):
        await interaction.response.defer(ephemeral=True, thinking=True)
        record = await database.get_verification(str(user.id))
        if not record:
            await interaction.followup.send(f"{user.mention} has no verified rank.", ephemeral=True)
            return
        tier = bot.table.by_name(record.rank_name)
        if tier is None:
            await interaction.followup.send(
                f"Stored rank **{record.rank_name}** is no longer in the rank table.", ephemeral=True
            )
            return
        try:
            changed = await assign_rank_role(user, tier, bot.table)
        except CollaboratorFailure as e:
            await interaction.followup.send(f"⚠️ {e}", ephemeral=True)
            return
        note = "Role updated." if changed else "Role was already correct."
        await interaction.followup.send(f"✅ {user.mention}: **{tier.rank_name}**. {note}", ephemeral=True)

    @tree.command(name="setrank", description="Manually set a user's rank")
    @discord.app_commands.describe(user="The user to set rank for", rank="The rank name to assign")
    @discord.app_commands.autocomplete(rank=rank_autocomplete)
    @discord.app_commands.guild_only()
    @admin
    async def setrank_cmd(interaction: discord.Interaction, user: discord.Member, rank: str):
        tier = bot.table.by_name(rank)
        if tier is None:
            await interaction.response.send_message(f"Unknown rank **{rank}**.", ephemeral=True)
            return
        if bot.verifier is None:
            await interaction.response.send_message("Bot is still starting, try again shortly.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            await bot.verifier.apply_override(str(user.id), str(user), tier)
        except CollaboratorFailure as e:
            await interaction.followup.send(f"⚠️ {e}", ephemeral=True)
            return
        await interaction.followup.send(f"✅ {user.mention} is now **{tier.rank_name}**.", ephemeral=True)

    @tree.command(name="removerank", description="Remove a user's verified rank")
    @discord.app_commands.describe(user="The user to remove rank from")
    @discord.app_commands.guild_only()
    @admin
    async def removerank_cmd(interaction: discord.Interaction, user: discord.Member):
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            removed_roles = await remove_rank_roles(user, bot.table)
            removed = await database.delete_verification(str(user.id))
            await database.log_action("admin_remove", discord_id=str(user.id), username=str(user), success=True)
        except CollaboratorFailure as e:
            await interaction.followup.send(f"⚠️ {e}", ephemeral=True)
            return
        if not removed and not removed_roles:
            await interaction.followup.send(f"{user.mention} had no verified rank.", ephemeral=True)
            return
        await interaction.followup.send(f"✅ Rank removed from {user.mention}.", ephemeral=True)

    @tree.command(name="purgedb", description="Purge all verification records from the database")
    @admin
    async def purgedb_cmd(interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True, thinking=True)
        count = await database.purge_all_verifications()
        logger.warning("All verifications purged by %s (%d records)", interaction.user.id, count)
        await interaction.followup.send(f"✅ Database purged ({count} records).", ephemeral=True)

    @tree.command(name="logs", description="View recent bot logs")
    @discord.app_commands.describe(lines="Number of log lines to retrieve (default: 50)")
    @admin
    async def logs_cmd(interaction: discord.Interaction, lines: discord.app_commands.Range[int, 1, 500] = 50):
        tail = tail_log(lines)
        if not tail:
            await interaction.response.send_message("No logs available.", ephemeral=True)
            return
        text = "\n".join(tail)
        if len(text) <= 1900:
            await interaction.response.send_message(f"```\n{text}\n```", ephemeral=True)
            return
        # Too long for a message; attach as a file
        file = discord.File(io.BytesIO(text.encode("utf-8")), filename="bot-logs.txt")
        await interaction.response.send_message(f"Last {len(tail)} log lines:", file=file, ephemeral=True)

    @tree.command(name="instructions", description="Resend verification channel instructions")
    @admin
    async def instructions_cmd(interaction: discord.Interaction):
        channel = bot.get_channel(config.RANK_CHANNEL_ID)
        if channel is None or not isinstance(channel, discord.TextChannel):
            await interaction.response.send_message("Verification channel not found.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        sent = await send_instructions(bot, channel, force=True)
        await interaction.followup.send("✅ Instructions sent." if sent else "❌ Could not send instructions.", ephemeral=True)

    @tree.command(name="checkrank", description="Check a user's verified rank")
    @discord.app_commands.describe(user="The user to check")
    @moderator
    async def checkrank_cmd(interaction: discord.Interaction, user: discord.User):
        record = await database.get_verification(str(user.id))
        if not record:
            await interaction.response.send_message(f"{user.mention} has no verified rank.", ephemeral=True)
            return
        await interaction.response.send_message(f"{user.mention}: {format_record(record)}", ephemeral=True)

    @tree.command(name="listverified", description="List all verified users")
    @discord.app_commands.describe(page="Page number (default: 1)")
    @moderator
    async def listverified_cmd(interaction: discord.Interaction, page: discord.app_commands.Range[int, 1] = 1):
        total = await database.count_verifications()
        pages = max(1, (total + LIST_PAGE_SIZE - 1) // LIST_PAGE_SIZE)
        page = min(page, pages)
        records = await database.list_verifications(limit=LIST_PAGE_SIZE, offset=(page - 1) * LIST_PAGE_SIZE)
        if not records:
            await interaction.response.send_message("No verified users yet.", ephemeral=True)
            return
        embed = discord.Embed(title="Verified users", color=0x00AE86)
        embed.description = "\n".join(
            f"<@{r.user_id}> - **{r.rank_name}** (level {r.level_detected})" for r in records
        )
        embed.set_footer(text=f"Page {page}/{pages} - {total} verified")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @tree.command(name="help", description="Show available commands")
    async def help_cmd(interaction: discord.Interaction):
        embed = discord.Embed(title="Rank verification bot", color=0x00AE86)
        embed.add_field(
            name="Everyone",
            value=f"Post a profile screenshot in <#{config.RANK_CHANNEL_ID}> to get your rank role.\n`/help`",
            inline=False,
        )
        embed.add_field(name="Moderators", value="`/checkrank` `/listverified`", inline=False)
        embed.add_field(
            name="Admins",
            value="`/recheck` `/setrank` `/removerank` `/purgedb` `/logs` `/instructions`",
            inline=False,
        )
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @tree.error
    async def on_command_error(interaction: discord.Interaction, error: discord.app_commands.AppCommandError):
        logger.error("Error handling /%s: %s", interaction.command.name if interaction.command else "?", error)
        text = "❌ An error occurred while processing your command."
        if interaction.response.is_done():
            await interaction.followup.send(text, ephemeral=True)
        else:
            await interaction.response.send_message(text, ephemeral=True)


# -----------------------------
# Main
# -----------------------------
async def main():
    setup_logging()
    missing = config.missing_required()
    if missing:
        logger.error("Missing required environment variables: %s", ", ".join(missing))
        return

    table = load_rank_table(config.RANKS_FILE)
    bot = RankBot(table)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(bot.close()))
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    async with bot:
        await bot.start(config.DISCORD_TOKEN)
    logger.info("Bot shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
