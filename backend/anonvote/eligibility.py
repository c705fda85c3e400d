"""
AnonVote Eligibility Sources
Who holds which community role; read as a snapshot, never locked
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import httpx

from anonvote.config import settings

logger = logging.getLogger(__name__)


class EligibilitySource(ABC):
    """Role membership lookups used for eligibility and admin checks"""

    @abstractmethod
    async def get_user_roles(self, user_id: str) -> List[str]:
        ...

    @abstractmethod
    async def list_members_with_role(self, role_id: str) -> List[str]:
        ...

    async def has_role(self, user_id: str, role_id: str) -> bool:
        if not user_id or not role_id:
            return False
        return role_id in await self.get_user_roles(user_id)

    async def has_any_role(self, user_id: str, role_ids: Iterable[str]) -> bool:
        wanted = set(role_ids)
        if not user_id or not wanted:
            return False
        return bool(wanted.intersection(await self.get_user_roles(user_id)))


class StaticEligibilitySource(EligibilitySource):
    """
    In-memory role table

    Loaded from STATIC_ROLE_MEMBERS ({role_id: [user_id, ...]}) or built up
    with grant(); used for development and tests.
    """

    def __init__(self, role_members: Optional[Dict[str, List[str]]] = None):
        self._role_members: Dict[str, List[str]] = {}
        for role_id, members in (role_members or {}).items():
            for user_id in members:
                self.grant(user_id, role_id)

    def grant(self, user_id: str, role_id: str) -> None:
        members = self._role_members.setdefault(role_id, [])
        if user_id not in members:
            members.append(user_id)

    def revoke(self, user_id: str, role_id: str) -> None:
        members = self._role_members.get(role_id, [])
        if user_id in members:
            members.remove(user_id)

    async def get_user_roles(self, user_id: str) -> List[str]:
        return [role_id for role_id, members in self._role_members.items() if user_id in members]

    async def list_members_with_role(self, role_id: str) -> List[str]:
        return list(self._role_members.get(role_id, []))


class DiscordEligibilitySource(EligibilitySource):
    """
    Guild roles read through the Discord bot REST API

    Lookups fail closed: a failed request yields no roles.
    """

    PAGE_SIZE = 1000

    def __init__(
        self,
        bot_token: str,
        guild_id: str,
        api_base: str = "https://discord.com/api/v10",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.guild_id = guild_id
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._client = client or httpx.AsyncClient(base_url=api_base, timeout=timeout)
        self._headers = {"Authorization": f"Bot {bot_token}"}

    async def get_user_roles(self, user_id: str) -> List[str]:
        try:
            response = await self._client.get(
                f"/guilds/{self.guild_id}/members/{user_id}", headers=self._headers
            )
        except httpx.HTTPError as e:
            self.logger.warning(f"Discord member lookup failed: {type(e).__name__}")
            return []

        if response.status_code == 404:
            return []
        if response.status_code != 200:
            self.logger.warning(f"Discord member lookup returned {response.status_code}")
            return []
        roles = response.json().get("roles") or []
        return [str(role) for role in roles]

    async def list_members_with_role(self, role_id: str) -> List[str]:
        members: List[str] = []
        after = "0"
        while True:
            try:
                response = await self._client.get(
                    f"/guilds/{self.guild_id}/members",
                    params={"limit": self.PAGE_SIZE, "after": after},
                    headers=self._headers,
                )
            except httpx.HTTPError as e:
                self.logger.warning(f"Discord member listing failed: {type(e).__name__}")
                return members
            if response.status_code != 200:
                self.logger.warning(f"Discord member listing returned {response.status_code}")
                return members

            page = response.json()
            for member in page:
                user_id = str(member.get("user", {}).get("id", ""))
                if user_id and role_id in [str(r) for r in member.get("roles", [])]:
                    members.append(user_id)

            if len(page) < self.PAGE_SIZE:
                return members
            after = str(page[-1]["user"]["id"])

    async def aclose(self) -> None:
        await self._client.aclose()


# Global eligibility source instance
_eligibility_source: Optional[EligibilitySource] = None


def get_eligibility_source() -> EligibilitySource:
    """Get or create the configured eligibility source"""
    global _eligibility_source
    if _eligibility_source is None:
        if settings.ELIGIBILITY_BACKEND == "discord":
            if not settings.DISCORD_BOT_TOKEN or not settings.DISCORD_GUILD_ID:
                raise RuntimeError("DISCORD_BOT_TOKEN and DISCORD_GUILD_ID are required")
            _eligibility_source = DiscordEligibilitySource(
                bot_token=settings.DISCORD_BOT_TOKEN,
                guild_id=settings.DISCORD_GUILD_ID,
                api_base=settings.DISCORD_API_BASE,
                timeout=settings.DISCORD_REQUEST_TIMEOUT,
            )
        else:
            _eligibility_source = StaticEligibilitySource(settings.STATIC_ROLE_MEMBERS)
    return _eligibility_source


def set_eligibility_source(source: Optional[EligibilitySource]) -> None:
    """Replace the global source (startup wiring and tests)"""
    global _eligibility_source
    _eligibility_source = source
