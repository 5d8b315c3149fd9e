from __future__ import annotations

import asyncio
import logging
from typing import FrozenSet, Iterable

import aiohttp
import discord

from domain.errors import InsufficientPermission, MemberNotFound, RoleMutationError
from domain.repositories import RoleGateway


log = logging.getLogger(__name__)

AUDIT_REASON = "Rank role sync"

# What discord.py lets through when the connection itself fails.
_CONNECTION_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


class DiscordRoleGateway(RoleGateway):
    """
    Role mutations for the members of one guild.

    Membership is always read over REST; the member cache may lag behind
    a mutation made a moment ago.
    """

    def __init__(self, guild: discord.Guild) -> None:
        self._guild = guild

    async def _fetch_member(self, member_id: str) -> discord.Member:
        try:
            return await self._guild.fetch_member(int(member_id))
        except discord.NotFound as exc:
            raise MemberNotFound(f"Member {member_id} is not in guild {self._guild.id}") from exc
        except (discord.HTTPException, *_CONNECTION_ERRORS) as exc:
            raise RoleMutationError(f"Fetching member failed: {exc!r}", member_id) from exc

    async def get_current_roles(self, member_id: str) -> FrozenSet[int]:
        member = await self._fetch_member(member_id)
        return frozenset(role.id for role in member.roles)

    async def add_roles(self, member_id: str, role_ids: Iterable[int]) -> None:
        role_ids = frozenset(role_ids)
        if not role_ids:
            return
        member = await self._fetch_member(member_id)
        try:
            await member.add_roles(*_objects(role_ids), reason=AUDIT_REASON, atomic=False)
        except discord.Forbidden as exc:
            log.error(
                "Missing permission to add roles %s to member %s", sorted(role_ids), member_id
            )
            raise InsufficientPermission(str(exc), member_id, role_ids) from exc
        except (discord.HTTPException, *_CONNECTION_ERRORS) as exc:
            raise RoleMutationError(repr(exc), member_id, role_ids) from exc

    async def remove_roles(self, member_id: str, role_ids: Iterable[int]) -> None:
        role_ids = frozenset(role_ids)
        if not role_ids:
            return
        member = await self._fetch_member(member_id)
        try:
            await member.remove_roles(*_objects(role_ids), reason=AUDIT_REASON, atomic=False)
        except discord.Forbidden as exc:
            log.error(
                "Missing permission to remove roles %s from member %s",
                sorted(role_ids),
                member_id,
            )
            raise InsufficientPermission(str(exc), member_id, role_ids) from exc
        except (discord.HTTPException, *_CONNECTION_ERRORS) as exc:
            raise RoleMutationError(repr(exc), member_id, role_ids) from exc


def _objects(role_ids: Iterable[int]):
    return [discord.Object(id=role_id) for role_id in sorted(role_ids)]
