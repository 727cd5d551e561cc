import logging

import discord

from errors import RoleAssignmentFailed
from models import RankTier
from ranks import RankTable

logger = logging.getLogger(__name__)

_PERMISSION_HINT = (
    "I don't have permission to modify roles. Grant **Manage Roles** and "
    "place my bot role above the rank roles."
)


def _rank_roles(guild: discord.Guild, table: RankTable) -> dict[str, discord.Role | None]:
    roles = {}
    for tier in table:
        try:
            roles[tier.rank_name] = guild.get_role(int(tier.role_id))
        except ValueError:
            roles[tier.rank_name] = None
    return roles


async def assign_rank_role(member: discord.Member, tier: RankTier, table: RankTable) -> bool:
    """
    Removes every other rank role and assigns tier's role.
    Returns True if the member's roles changed.
    """
    roles_map = _rank_roles(member.guild, table)
    target_role = roles_map.get(tier.rank_name)
    if target_role is None:
        raise RoleAssignmentFailed(f"Role {tier.role_id} for rank {tier.rank_name!r} does not exist in this server.")

    to_remove = [r for name, r in roles_map.items() if name != tier.rank_name and r and r in member.roles]

    changed = False
    try:
        if to_remove:
            await member.remove_roles(*to_remove, reason="Update verified rank role")
            changed = True
        if target_role not in member.roles:
            await member.add_roles(target_role, reason=f"Verified rank: {tier.rank_name}")
            changed = True
    except discord.Forbidden as e:
        raise RoleAssignmentFailed(_PERMISSION_HINT) from e
    except discord.HTTPException as e:
        raise RoleAssignmentFailed(f"Discord rejected the role update: {e}") from e

    if changed:
        logger.info("Rank role %s assigned to %s", tier.rank_name, member.id)
    return changed


async def remove_rank_roles(member: discord.Member, table: RankTable) -> int:
    roles_map = _rank_roles(member.guild, table)
    to_remove = [r for r in roles_map.values() if r and r in member.roles]
    if not to_remove:
        return 0
    try:
        await member.remove_roles(*to_remove, reason="Verified rank removed")
    except discord.Forbidden as e:
        raise RoleAssignmentFailed(_PERMISSION_HINT) from e
    except discord.HTTPException as e:
        raise RoleAssignmentFailed(f"Discord rejected the role update: {e}") from e
    return len(to_remove)


class DiscordRoleGranter:
    """Role port for the verifier: resolves the member by id, then assigns."""

    def __init__(self, client: discord.Client, guild_id: int, table: RankTable):
        self._client = client
        self._guild_id = guild_id
        self._table = table

    async def _member(self, user_id: str) -> discord.Member:
        guild = self._client.get_guild(self._guild_id)
        if guild is None:
            raise RoleAssignmentFailed(f"Guild {self._guild_id} is not available.")
        member = guild.get_member(int(user_id))
        if member is not None:
            return member
        try:
            return await guild.fetch_member(int(user_id))
        except discord.HTTPException as e:
            raise RoleAssignmentFailed(f"Member {user_id} not found: {e}") from e

    async def assign(self, user_id: str, tier: RankTier) -> None:
        member = await self._member(user_id)
        await assign_rank_role(member, tier, self._table)
