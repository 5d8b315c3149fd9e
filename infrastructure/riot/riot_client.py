from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

import aiohttp

from domain.errors import (
    UpstreamAuthError,
    UpstreamError,
    UpstreamNotFound,
    UpstreamTransient,
)
from domain.models import Ladder, ResolvedAccount, TierResult
from domain.repositories import AccountDirectory, RankFetcher


log = logging.getLogger(__name__)

LOL_LADDERS = (Ladder.SOLOQ, Ladder.FLEX)
TFT_LADDERS = (Ladder.TFT, Ladder.DOUBLEUP)


def error_for_status(status: int, url: str, retry_after: Optional[str] = None) -> UpstreamError:
    """Translate a non-2xx Riot API status into the matching domain error."""

    if status == 404:
        return UpstreamNotFound(f"Not found: {url}", status)
    if status in (401, 403):
        return UpstreamAuthError(f"Riot API rejected the API key ({status})", status)
    if status == 429:
        try:
            delay = float(retry_after) if retry_after is not None else None
        except ValueError:
            delay = None
        return UpstreamTransient("Riot API rate limit exceeded", status, retry_after=delay)
    return UpstreamTransient(f"Riot API returned {status} for {url}", status)


def tiers_from_entries(entries: Any, ladders: Iterable[Ladder]) -> Dict[Ladder, TierResult]:
    """
    Pick the entry of each ladder's queue from a league entries payload.

    A queue with no entry means the account never placed there: UNRANKED.
    """

    by_queue: Dict[str, Any] = {}
    if isinstance(entries, list):
        for entry in entries:
            if isinstance(entry, dict) and entry.get("queueType"):
                by_queue.setdefault(entry["queueType"], entry)

    results: Dict[Ladder, TierResult] = {}
    for ladder in ladders:
        entry = by_queue.get(ladder.queue_type)
        results[ladder] = TierResult.ok(entry.get("tier") if entry else None)
    return results


class RiotClient(RankFetcher, AccountDirectory):
    """
    Minimal async client for the Riot Games API.

    Account lookups go to the regional route (`europe`), summoner and league
    reads to the platform route (`euw1`). TFT endpoints use their own API key,
    and the secondary account id is the PUUID as seen by that key.
    """

    def __init__(
        self,
        api_key: str,
        tft_api_key: Optional[str] = None,
        region: str = "europe",
        platform: str = "euw1",
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._api_key = api_key
        self._tft_api_key = tft_api_key or api_key
        self._regional_base = f"https://{region}.api.riotgames.com"
        self._platform_base = f"https://{platform}.api.riotgames.com"
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_json(self, url: str, api_key: str) -> Any:
        session = self._get_session()
        try:
            async with session.get(
                url,
                headers={"X-Riot-Token": api_key},
                timeout=self._timeout,
            ) as response:
                if response.status != 200:
                    raise error_for_status(
                        response.status,
                        url,
                        response.headers.get("Retry-After"),
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as exc:
                    # Proxies in front of the API answer 200 with an HTML page.
                    raise UpstreamTransient(f"Invalid JSON from {url}", response.status) from exc
        except asyncio.TimeoutError as exc:
            raise UpstreamTransient(f"Timed out requesting {url}") from exc
        except aiohttp.ClientError as exc:
            raise UpstreamTransient(f"Request to {url} failed: {exc}") from exc

    async def resolve_account(self, game_name: str, tag_line: str) -> ResolvedAccount:
        path = (
            "/riot/account/v1/accounts/by-riot-id/"
            f"{quote(game_name, safe='')}/{quote(tag_line, safe='')}"
        )
        data = await self._get_json(self._regional_base + path, self._api_key)
        puuid = data.get("puuid") if isinstance(data, dict) else None
        if not puuid:
            raise UpstreamNotFound(f"No account for {game_name}#{tag_line}")

        secondary_id: Optional[str] = None
        if self._tft_api_key == self._api_key:
            secondary_id = puuid
        else:
            try:
                tft_data = await self._get_json(self._regional_base + path, self._tft_api_key)
                secondary_id = tft_data.get("puuid") if isinstance(tft_data, dict) else None
            except UpstreamError as exc:
                # TFT ladders become not applicable for this account.
                log.warning("Could not resolve the TFT id of %s#%s: %s", game_name, tag_line, exc)

        return ResolvedAccount(
            account_id=puuid,
            display_name=data.get("gameName") or game_name,
            tag_line=data.get("tagLine") or tag_line,
            secondary_account_id=secondary_id,
        )

    async def fetch_profile_icon(self, account_id: str) -> int:
        url = f"{self._platform_base}/lol/summoner/v4/summoners/by-puuid/{quote(account_id, safe='')}"
        data = await self._get_json(url, self._api_key)
        try:
            return int(data["profileIconId"])
        except (KeyError, TypeError, ValueError):
            raise UpstreamTransient(f"Unexpected summoner payload for {account_id}") from None

    async def _fetch_group(
        self,
        url: str,
        api_key: str,
        ladders: List[Ladder],
    ) -> Dict[Ladder, TierResult]:
        try:
            entries = await self._get_json(url, api_key)
        except UpstreamNotFound:
            # Riot answers 404 for ids it has no league data for.
            return tiers_from_entries([], ladders)
        except UpstreamError as exc:
            if isinstance(exc, UpstreamAuthError):
                log.error("Riot API rejected our credentials for %s: %s", url, exc)
            else:
                log.warning("Fetching %s failed: %s", url, exc)
            return {ladder: TierResult.unavailable(exc) for ladder in ladders}
        return tiers_from_entries(entries, ladders)

    async def fetch_tiers(
        self,
        account_id: str,
        secondary_account_id: Optional[str] = None,
    ) -> Dict[Ladder, TierResult]:
        lol_url = f"{self._platform_base}/lol/league/v4/entries/by-puuid/{quote(account_id, safe='')}"
        calls = [self._fetch_group(lol_url, self._api_key, list(LOL_LADDERS))]

        if secondary_account_id:
            tft_url = (
                f"{self._platform_base}/tft/league/v1/by-puuid/"
                f"{quote(secondary_account_id, safe='')}"
            )
            calls.append(self._fetch_group(tft_url, self._tft_api_key, list(TFT_LADDERS)))

        results: Dict[Ladder, TierResult] = {}
        for group in await asyncio.gather(*calls):
            results.update(group)

        if not secondary_account_id:
            for ladder in TFT_LADDERS:
                results[ladder] = TierResult.not_applicable()
        return results
