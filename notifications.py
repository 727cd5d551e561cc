import logging

import discord

from dm_cleanup import DMCleanupService
from errors import DeliveryFailed
from models import Outcome, OutcomeKind

logger = logging.getLogger(__name__)

INSTRUCTIONS_TITLE = "📸 8 Ball Pool Rank Verification"

INVALID_FORMAT_TEXT = (
    "❌ Invalid format. Please upload a screenshot of your 8 Ball Pool **Profile** screen "
    "(showing your level, rank, and stats), not the main menu or other screens."
)
UNREADABLE_TEXT = (
    "I couldn't read your screenshot clearly. Please upload a clearer image of your "
    "8 Ball Pool profile showing your level and rank."
)
ERROR_TEXT = (
    "An error occurred while processing your verification. "
    "Please try again or contact an administrator."
)


def build_success_embed(outcome: Outcome) -> discord.Embed:
    rank = outcome.rank
    embed = discord.Embed(
        title="✅ Rank Verification Successful",
        description=(
            f"Your 8 Ball Pool rank has been verified as **{rank.rank_name}** "
            f"(Level {rank.level_min}+).\n\nYour Discord role has been updated successfully."
        ),
        color=0x00AE86,
    )
    embed.add_field(name="🎯 Level", value=f"`{outcome.level}`", inline=True)
    embed.add_field(name="🎭 Rank", value=f"`{rank.rank_name}`", inline=True)
    embed.timestamp = discord.utils.utcnow()
    return embed


def no_upgrade_text(outcome: Outcome) -> str:
    return (
        f"ℹ️ You are already verified as **{outcome.prior_rank_name}**. "
        f"Your screenshot shows **{outcome.rank.rank_name}**, so your role was left unchanged."
    )


def build_instructions_embed(example_image_url: str = "") -> discord.Embed:
    embed = discord.Embed(
        title=INSTRUCTIONS_TITLE,
        description=(
            "**Please add your profile here to receive your specific role!**\n\n"
            "1. Click onto your **account profile** on 8 Ball Pool\n"
            "2. Take a screenshot of your profile screen (showing your level, rank, and stats)\n"
            "3. Upload the screenshot here\n"
            "4. You will receive a DM confirming your verified rank and role assignment\n\n"
            "**Important:**\n"
            "• Only profile screenshots are accepted (not main menu or other screens)\n"
            "• Make sure your screenshot clearly shows your **Level** and **Rank**\n"
            "• Your role only ever goes up; a lower rank than the one on file is ignored\n"
            "• Your screenshot will be deleted after processing to keep the channel clean\n\n"
            "**⚠️ Disclaimer:**\n"
            "• If you misuse this system, you may be banned from the server\n"
            "• If we detect that this is not your account, we may remove the verification"
        ),
        color=0x00AE86,
    )
    if example_image_url:
        embed.set_image(url=example_image_url)
        embed.set_footer(text="Example profile screenshot above")
    embed.timestamp = discord.utils.utcnow()
    return embed


class DiscordNotifier:
    """Sends ephemeral DMs: every message it sends is handed to the cleanup service."""

    def __init__(self, client: discord.Client, cleanup: DMCleanupService):
        self._client = client
        self._cleanup = cleanup

    async def _deliver(self, user_id: str, content: str | None, embed: discord.Embed | None) -> discord.Message:
        try:
            user = self._client.get_user(int(user_id)) or await self._client.fetch_user(int(user_id))
            return await user.send(content=content, embed=embed)
        except discord.Forbidden as e:
            raise DeliveryFailed(f"DMs closed for user {user_id}") from e
        except discord.HTTPException as e:
            raise DeliveryFailed(f"Failed to send DM to {user_id}: {e}") from e

    async def send_ephemeral(self, user_id: str, content: str | None = None, embed: discord.Embed | None = None):
        """Returns the sent message, or None if it couldn't be delivered (never raises for that)."""
        try:
            message = await self._deliver(user_id, content, embed)
        except DeliveryFailed as e:
            # a lost DM must not stop the pipeline
            logger.info("Notification dropped: %s", e)
            return None

        self._cleanup.schedule(message)
        return message

    async def notify(self, user_id: str, outcome: Outcome):
        if outcome.kind is OutcomeKind.ACCEPT:
            return await self.send_ephemeral(user_id, embed=build_success_embed(outcome))
        if outcome.kind is OutcomeKind.REJECT_INVALID:
            return await self.send_ephemeral(user_id, content=INVALID_FORMAT_TEXT)
        if outcome.kind is OutcomeKind.REJECT_UNREADABLE:
            return await self.send_ephemeral(user_id, content=UNREADABLE_TEXT)
        return await self.send_ephemeral(user_id, content=no_upgrade_text(outcome))

    async def notify_error(self, user_id: str):
        return await self.send_ephemeral(user_id, content=ERROR_TEXT)
