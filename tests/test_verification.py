import asyncio
import random
import unittest

from application.services import ExternalContext, start_link
from application.verification import (
    STARTER_ICON_IDS,
    ChallengeState,
    ConfirmOutcome,
    VerificationOrchestrator,
)
from domain.errors import UpstreamTransient
from domain.models import MAX_ACCOUNTS, UNRANKED, Ladder, LinkedAccount, ResolvedAccount, TierResult
from domain.role_bindings import RoleBindings

from fakes import FakeDirectory, FakeRankFetcher, FakeRoleGateway, InMemoryAccountRepository


USER_ID = "111"
FAKER = ResolvedAccount(
    account_id="puuid-faker",
    display_name="Faker",
    tag_line="EUW",
    secondary_account_id="tft-puuid-faker",
)


class VerificationTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.repo = InMemoryAccountRepository()
        self.directory = FakeDirectory()
        self.directory.add(FAKER, icon_id=7)
        self.fetcher = FakeRankFetcher()
        self.fetcher.set_tiers(FAKER.account_id, soloq="GOLD", tft="DIAMOND")
        self.bindings = RoleBindings.default()
        self.gateway = FakeRoleGateway({USER_ID: set()})
        self.orchestrator = self._orchestrator()
        self.ctx = ExternalContext(provider="discord", provider_user_id=USER_ID, display_name="Tester")

    def _orchestrator(self, timeout: float = 300) -> VerificationOrchestrator:
        return VerificationOrchestrator(
            self.repo,
            self.directory,
            self.fetcher,
            self.bindings,
            timeout=timeout,
            rng=random.Random(4),
        )

    async def asyncTearDown(self) -> None:
        self.orchestrator.cancel_all()

    async def test_link_flow_assigns_one_role_per_ladder(self):
        started = await start_link(self.ctx, "Faker", "#EUW", self.repo, self.directory, self.orchestrator)
        self.assertTrue(started.success)
        challenge = started.challenge
        self.assertNotEqual(challenge.expected_icon_id, 7)
        self.assertIn(f"/profileicon/{challenge.expected_icon_id}.png", started.icon_url)

        self.directory.icons[FAKER.account_id] = challenge.expected_icon_id
        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.LINKED)
        self.assertEqual(challenge.state, ChallengeState.LINKED)
        expected = {
            self.bindings.role_for(Ladder.SOLOQ, "GOLD"),
            self.bindings.role_for(Ladder.FLEX, UNRANKED),
            self.bindings.role_for(Ladder.TFT, "DIAMOND"),
            self.bindings.role_for(Ladder.DOUBLEUP, UNRANKED),
        }
        self.assertEqual(self.gateway.roles[USER_ID], expected)
        self.assertEqual(result.sync.result.delta.removed, frozenset())
        self.assertEqual(len(self.repo.list_by_user(USER_ID)), 1)
        stored = self.repo.get_by_account_id(FAKER.account_id)
        self.assertEqual(stored.user_id, USER_ID)
        self.assertEqual(stored.tier(Ladder.SOLOQ), "GOLD")
        self.assertEqual(stored.tier(Ladder.FLEX), UNRANKED)
        self.assertEqual(stored.tier(Ladder.TFT), "DIAMOND")
        self.assertEqual(stored.tier(Ladder.DOUBLEUP), UNRANKED)
        self.assertIn("Faker#EUW", result.message)

    async def test_wrong_icon_keeps_challenge_open(self):
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)

        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.MISMATCH)
        self.assertEqual(result.observed_icon_id, 7)
        self.assertEqual(challenge.state, ChallengeState.ISSUED)
        self.assertIsNone(self.repo.get_by_account_id(FAKER.account_id))
        self.assertEqual(self.gateway.mutations(), [])

        self.directory.icons[FAKER.account_id] = 12
        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)
        self.assertEqual(result.outcome, ConfirmOutcome.LINKED)

    async def test_challenge_expires_without_side_effects(self):
        self.orchestrator = self._orchestrator(timeout=0.05)
        expired = []
        fired = asyncio.Event()

        async def on_expire(challenge):
            expired.append(challenge.token)
            fired.set()

        challenge = self.orchestrator.issue(USER_ID, FAKER, 12, on_expire=on_expire)
        await asyncio.wait_for(fired.wait(), timeout=2)

        self.assertEqual(challenge.state, ChallengeState.EXPIRED)
        self.assertIsNone(self.orchestrator.get(challenge.token))
        self.assertEqual(expired, [challenge.token])
        self.assertEqual(self.repo.upserts, 0)
        self.assertEqual(self.gateway.mutations(), [])

        self.directory.icons[FAKER.account_id] = 12
        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)
        self.assertEqual(result.outcome, ConfirmOutcome.EXPIRED)

    async def test_expiry_during_check_applies_after_mismatch(self):
        self.orchestrator = self._orchestrator(timeout=0.05)
        self.directory.icon_gate = asyncio.Event()
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)

        pending = asyncio.ensure_future(
            self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)
        )
        await asyncio.sleep(0.1)
        self.assertEqual(challenge.state, ChallengeState.VERIFYING)
        self.assertTrue(challenge.expiry_pending)

        self.directory.icon_gate.set()
        result = await pending

        self.assertEqual(result.outcome, ConfirmOutcome.EXPIRED)
        self.assertEqual(challenge.state, ChallengeState.EXPIRED)

    async def test_match_during_deadline_still_links(self):
        self.orchestrator = self._orchestrator(timeout=0.05)
        self.directory.icon_gate = asyncio.Event()
        self.directory.icons[FAKER.account_id] = 12
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)

        pending = asyncio.ensure_future(
            self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)
        )
        await asyncio.sleep(0.1)
        self.directory.icon_gate.set()
        result = await pending

        self.assertEqual(result.outcome, ConfirmOutcome.LINKED)

    async def test_limit_is_checked_on_success(self):
        for index in range(MAX_ACCOUNTS):
            self.repo.upsert(
                LinkedAccount(
                    user_id=USER_ID,
                    account_id=f"other-{index}",
                    display_name=f"Other{index}",
                    tag_line="EUW",
                )
            )
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)
        self.directory.icons[FAKER.account_id] = 12

        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.LIMIT_EXCEEDED)
        self.assertEqual(challenge.state, ChallengeState.FAILED)
        self.assertIsNone(self.repo.get_by_account_id(FAKER.account_id))
        self.assertEqual(self.gateway.mutations(), [])
        self.assertIn(str(MAX_ACCOUNTS), result.message)

    async def test_start_link_rejects_users_at_the_cap(self):
        for index in range(MAX_ACCOUNTS):
            self.repo.upsert(
                LinkedAccount(user_id=USER_ID, account_id=f"o{index}", display_name="O", tag_line="EUW")
            )

        result = await start_link(self.ctx, "Faker", "EUW", self.repo, self.directory, self.orchestrator)

        self.assertFalse(result.success)
        self.assertIsNone(result.challenge)

    async def test_unknown_riot_id_is_reported(self):
        result = await start_link(self.ctx, "Nobody", "EUW", self.repo, self.directory, self.orchestrator)
        self.assertFalse(result.success)
        self.assertIn("No Riot account", result.message)

    async def test_only_the_challenged_user_can_confirm(self):
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)
        self.directory.icons[FAKER.account_id] = 12

        result = await self.orchestrator.confirm(challenge.token, "222", self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.NOT_OWNER)
        self.assertTrue(challenge.is_open)

    async def test_upstream_error_keeps_challenge_open(self):
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)
        self.directory.icon_error = UpstreamTransient("timeout")

        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.UPSTREAM_ERROR)
        self.assertFalse(result.terminal)
        self.assertEqual(challenge.state, ChallengeState.ISSUED)

    async def test_rate_limit_message_reports_the_wait(self):
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)
        self.directory.icon_error = UpstreamTransient("rate limited", 429, retry_after=12)

        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.UPSTREAM_ERROR)
        self.assertIn("12 seconds", result.message)

    async def test_unexpected_icon_failure_leaves_challenge_retryable(self):
        self.orchestrator = self._orchestrator(timeout=0.1)
        fired = asyncio.Event()

        async def on_expire(challenge):
            fired.set()

        challenge = self.orchestrator.issue(USER_ID, FAKER, 12, on_expire=on_expire)
        self.directory.icon_error = ValueError("Expecting value: line 1 column 1 (char 0)")

        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.UPSTREAM_ERROR)
        self.assertEqual(challenge.state, ChallengeState.ISSUED)

        await asyncio.wait_for(fired.wait(), timeout=2)
        self.assertEqual(challenge.state, ChallengeState.EXPIRED)
        self.assertIsNone(self.orchestrator.get(challenge.token))

        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)
        self.assertEqual(result.outcome, ConfirmOutcome.EXPIRED)

    async def test_unexpected_failure_after_deadline_expires_the_challenge(self):
        self.orchestrator = self._orchestrator(timeout=0.05)
        self.directory.icon_gate = asyncio.Event()
        self.directory.icon_error = ValueError("Expecting value")
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)

        pending = asyncio.ensure_future(
            self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)
        )
        await asyncio.sleep(0.1)
        self.assertTrue(challenge.expiry_pending)

        self.directory.icon_gate.set()
        result = await pending

        self.assertEqual(result.outcome, ConfirmOutcome.EXPIRED)
        self.assertEqual(challenge.state, ChallengeState.EXPIRED)
        self.assertIsNone(self.orchestrator.get(challenge.token))

    async def test_unavailable_ladders_are_flagged_on_link(self):
        self.fetcher.set_result(FAKER.account_id, Ladder.TFT, TierResult.unavailable(UpstreamTransient("503")))
        challenge = self.orchestrator.issue(USER_ID, FAKER, 12)
        self.directory.icons[FAKER.account_id] = 12

        result = await self.orchestrator.confirm(challenge.token, USER_ID, self.gateway)

        self.assertEqual(result.outcome, ConfirmOutcome.LINKED)
        self.assertTrue(result.partial_tiers)
        self.assertEqual(result.account.tier(Ladder.TFT), UNRANKED)

    def test_choose_icon_never_returns_the_current_icon(self):
        for current in STARTER_ICON_IDS:
            self.assertNotEqual(self.orchestrator.choose_icon(current), current)


if __name__ == "__main__":
    unittest.main()
