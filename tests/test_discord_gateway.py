from __future__ import annotations

import unittest
from types import SimpleNamespace

try:
    import discord
except ModuleNotFoundError:
    discord = None

if discord is not None:
    from misc.discord_gateway import DiscordGateway
    from misc.discord_gateway import build_poll_result_embed


def _http_error(cls, status: int):
    return cls(SimpleNamespace(status=status, reason="nope"), "nope")


class _FakeRole:
    def __init__(self, role_id: int):
        self.id = role_id


class _FakeMember:
    def __init__(self, member_id: int, roles=(), remove_error=None):
        self.id = member_id
        self.roles = list(roles)
        self.remove_error = remove_error
        self.removed: list[tuple] = []

    async def remove_roles(self, role, reason=None):
        if self.remove_error is not None:
            raise self.remove_error
        self.removed.append((role.id, reason))
        self.roles.remove(role)


class _FakeGuild:
    def __init__(self, guild_id: int, *, members=(), roles=(), fetch_error=None):
        self.id = guild_id
        self.name = "Test Guild"
        self._members = {m.id: m for m in members}
        self._roles = {r.id: r for r in roles}
        self.fetch_error = fetch_error

    def get_member(self, member_id: int):
        return self._members.get(member_id)

    async def fetch_member(self, member_id: int):
        if self.fetch_error is not None:
            raise self.fetch_error
        return self._members[member_id]

    def get_role(self, role_id: int):
        return self._roles.get(role_id)


class _FakeMessageable:
    def __init__(self):
        self.sent: list = []

    async def send(self, content=None, *, embed=None):
        self.sent.append(embed if embed is not None else content)


class _FakeBot:
    def __init__(self, guilds=(), channels=None, users=None):
        self._guilds = {g.id: g for g in guilds}
        self._channels = channels or {}
        self._users = users or {}

    def get_guild(self, guild_id: int):
        return self._guilds.get(guild_id)

    async def fetch_guild(self, guild_id: int):
        raise _http_error(discord.NotFound, 404)

    def get_channel(self, channel_id: int):
        return self._channels.get(channel_id)

    async def fetch_channel(self, channel_id: int):
        raise _http_error(discord.NotFound, 404)

    def get_user(self, user_id: int):
        return self._users.get(user_id)

    async def fetch_user(self, user_id: int):
        raise _http_error(discord.NotFound, 404)


@unittest.skipIf(discord is None, "discord.py not installed")
class RevokeRoleTests(unittest.IsolatedAsyncioTestCase):
    async def test_removes_role_with_reason(self):
        role = _FakeRole(30)
        member = _FakeMember(20, roles=[role])
        gateway = DiscordGateway(_FakeBot(guilds=[_FakeGuild(10, members=[member], roles=[role])]))

        outcome = await gateway.revoke_role("10", "20", "30", reason="Temporary role expired")

        self.assertEqual(outcome, "ok")
        self.assertEqual(member.removed, [(30, "Temporary role expired")])

    async def test_member_without_role_is_ok(self):
        role = _FakeRole(30)
        member = _FakeMember(20)
        gateway = DiscordGateway(_FakeBot(guilds=[_FakeGuild(10, members=[member], roles=[role])]))

        self.assertEqual(await gateway.revoke_role(10, 20, 30, reason="x"), "ok")
        self.assertEqual(member.removed, [])

    async def test_missing_role_member_or_guild_is_not_found(self):
        member = _FakeMember(20)
        guild = _FakeGuild(10, members=[member])
        gateway = DiscordGateway(_FakeBot(guilds=[guild]))
        self.assertEqual(await gateway.revoke_role(10, 20, 30, reason="x"), "not_found")

        gone = _FakeGuild(11, roles=[_FakeRole(30)], fetch_error=_http_error(discord.NotFound, 404))
        gateway = DiscordGateway(_FakeBot(guilds=[gone]))
        self.assertEqual(await gateway.revoke_role(11, 99, 30, reason="x"), "not_found")

        gateway = DiscordGateway(_FakeBot())
        self.assertEqual(await gateway.revoke_role(12, 20, 30, reason="x"), "not_found")
        self.assertEqual(await gateway.revoke_role("abc", 20, 30, reason="x"), "not_found")

    async def test_forbidden_and_http_errors(self):
        role = _FakeRole(30)
        denied = _FakeMember(20, roles=[role], remove_error=_http_error(discord.Forbidden, 403))
        gateway = DiscordGateway(_FakeBot(guilds=[_FakeGuild(10, members=[denied], roles=[role])]))
        self.assertEqual(await gateway.revoke_role(10, 20, 30, reason="x"), "forbidden")

        flaky = _FakeMember(21, roles=[role], remove_error=_http_error(discord.HTTPException, 500))
        gateway = DiscordGateway(_FakeBot(guilds=[_FakeGuild(10, members=[flaky], roles=[role])]))
        self.assertEqual(await gateway.revoke_role(10, 21, 30, reason="x"), "error")


@unittest.skipIf(discord is None, "discord.py not installed")
class NotifyAndPublishTests(unittest.IsolatedAsyncioTestCase):
    async def test_notify_user_sends_embed(self):
        user = _FakeMessageable()
        gateway = DiscordGateway(_FakeBot(guilds=[_FakeGuild(10)], users={20: user}))

        ok = await gateway.notify_user("20", {"title": "Temporary role expired", "description": "bye", "guild_id": "10"})

        self.assertTrue(ok)
        self.assertIsInstance(user.sent[0], discord.Embed)
        self.assertEqual(user.sent[0].title, "Temporary role expired")
        self.assertEqual(user.sent[0].footer.text, "Test Guild")

    async def test_notify_unknown_user_returns_false(self):
        gateway = DiscordGateway(_FakeBot())
        self.assertFalse(await gateway.notify_user(20, {"title": "t"}))

    async def test_publish_poll_result(self):
        channel = _FakeMessageable()
        gateway = DiscordGateway(_FakeBot(channels={55: channel}))
        poll = {"id": "p1", "question": "Lunch?", "options": ["pizza", "tacos"], "votes": {"1": [0], "2": [0]}}

        self.assertTrue(await gateway.publish_poll_result("55", poll))
        embed = channel.sent[0]
        self.assertIn("Lunch?", embed.title)
        self.assertIn("**pizza** - 2 vote(s) (100.0%)", embed.description)

    async def test_publish_to_missing_channel_returns_false(self):
        gateway = DiscordGateway(_FakeBot())
        self.assertFalse(await gateway.publish_poll_result("55", {"id": "p1", "options": []}))


@unittest.skipIf(discord is None, "discord.py not installed")
class PollEmbedTests(unittest.TestCase):
    def test_footer_counts_votes_and_voters(self):
        embed = build_poll_result_embed({"question": "Q", "options": ["a", "b"], "votes": {"1": [0, 1]}})
        self.assertEqual(embed.footer.text, "2 vote(s) from 1 voter(s)")


if __name__ == "__main__":
    unittest.main()
