import asyncio
import unittest
from types import SimpleNamespace
from unittest import mock

import aiohttp

from application.reconciler import ReconcileState, reconcile
from domain.errors import RoleMutationError
from infrastructure.discord.role_gateway import AUDIT_REASON, DiscordRoleGateway


def _member(*role_ids: int) -> SimpleNamespace:
    return SimpleNamespace(
        roles=[SimpleNamespace(id=role_id) for role_id in role_ids],
        add_roles=mock.AsyncMock(),
        remove_roles=mock.AsyncMock(),
    )


def _guild(member: SimpleNamespace) -> SimpleNamespace:
    return SimpleNamespace(id=42, fetch_member=mock.AsyncMock(return_value=member))


def _connection_reset() -> aiohttp.ClientOSError:
    return aiohttp.ClientOSError(104, "Connection reset by peer")


class DiscordRoleGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def test_reads_roles_over_rest(self):
        guild = _guild(_member(1, 2))
        gateway = DiscordRoleGateway(guild)

        self.assertEqual(await gateway.get_current_roles("7"), frozenset({1, 2}))
        guild.fetch_member.assert_awaited_once_with(7)

    async def test_batches_are_sent_in_one_call(self):
        member = _member()
        gateway = DiscordRoleGateway(_guild(member))

        await gateway.add_roles("7", {3, 1})

        member.add_roles.assert_awaited_once()
        objects = member.add_roles.await_args.args
        self.assertEqual([obj.id for obj in objects], [1, 3])
        self.assertEqual(member.add_roles.await_args.kwargs["reason"], AUDIT_REASON)
        self.assertFalse(member.add_roles.await_args.kwargs["atomic"])

    async def test_empty_batches_skip_the_platform(self):
        guild = _guild(_member())
        gateway = DiscordRoleGateway(guild)

        await gateway.remove_roles("7", [])

        guild.fetch_member.assert_not_awaited()

    async def test_connection_reset_becomes_role_mutation_error(self):
        member = _member(1)
        member.remove_roles.side_effect = _connection_reset()
        gateway = DiscordRoleGateway(_guild(member))

        with self.assertRaises(RoleMutationError) as ctx:
            await gateway.remove_roles("7", {1})
        self.assertEqual(ctx.exception.role_ids, frozenset({1}))

    async def test_fetch_timeout_becomes_role_mutation_error(self):
        guild = _guild(_member())
        guild.fetch_member.side_effect = asyncio.TimeoutError()
        gateway = DiscordRoleGateway(guild)

        with self.assertRaises(RoleMutationError):
            await gateway.get_current_roles("7")

    async def test_failed_removal_does_not_stop_the_addition(self):
        member = _member(1)
        member.remove_roles.side_effect = _connection_reset()
        gateway = DiscordRoleGateway(_guild(member))

        result = await reconcile("7", {2}, {1, 2}, gateway)

        self.assertEqual(result.state, ReconcileState.PARTIAL)
        self.assertIsInstance(result.errors[0], RoleMutationError)
        member.add_roles.assert_awaited_once()
        self.assertEqual([obj.id for obj in member.add_roles.await_args.args], [2])

    async def test_disconnect_on_first_read_aborts_without_raising(self):
        guild = _guild(_member(1))
        guild.fetch_member.side_effect = aiohttp.ServerDisconnectedError()
        gateway = DiscordRoleGateway(guild)

        result = await reconcile("7", {2}, {1, 2}, gateway)

        self.assertEqual(result.state, ReconcileState.ABORTED)


if __name__ == "__main__":
    unittest.main()
