"""
Unit tests for budget guardrails.

Tests rule validation, scope derivation, threshold escalation with
hysteresis, and kill decisions.
"""

from datetime import timedelta

import pytest

from conftest import at, make_event
from llm_cost_guard.core.guardrails import (
    BudgetExceededError,
    BudgetKillEvent,
    BudgetPolicyEngine,
    BudgetRule,
    ScopeBy,
    Subscribers,
    highest_threshold,
    resolve_scope,
)
from llm_cost_guard.storage.repository import MemoryStorageAdapter

MINUTE = timedelta(minutes=1)


class TestBudgetRule:
    """Test BudgetRule validation."""

    def test_defaults(self):
        """Verify global scope and kill switch are the defaults."""
        rule = BudgetRule(limit_usd=10, window=MINUTE)
        assert rule.scope_by == ScopeBy.GLOBAL
        assert rule.kill_switch is True
        assert rule.id is None

    def test_scope_by_string_normalized(self):
        """Verify string scope modes become ScopeBy members."""
        assert BudgetRule(limit_usd=1, window=MINUTE, scope_by="user_feature").scope_by == ScopeBy.USER_FEATURE
        assert BudgetRule(limit_usd=1, window=MINUTE, scope_by="USER").scope_by == ScopeBy.USER

    def test_invalid_scope_by(self):
        """Verify unknown scope modes are rejected."""
        with pytest.raises(ValueError, match="scope_by must be one of"):
            BudgetRule(limit_usd=1, window=MINUTE, scope_by="team")

    def test_limit_must_be_positive(self):
        """Verify zero and negative limits are rejected."""
        with pytest.raises(ValueError, match="limit_usd must be > 0"):
            BudgetRule(limit_usd=0, window=MINUTE)
        with pytest.raises(ValueError, match="limit_usd must be > 0"):
            BudgetRule(limit_usd=-5, window=MINUTE)

    def test_window_must_be_positive_timedelta(self):
        """Verify windows must be positive timedeltas."""
        with pytest.raises(ValueError, match="window must be > 0"):
            BudgetRule(limit_usd=1, window=timedelta(0))
        with pytest.raises(ValueError, match="window must be a timedelta"):
            BudgetRule(limit_usd=1, window=60)

    def test_matches_static_filters(self):
        """Verify model/user/feature filters must all equal the event's."""
        event = make_event(0, model="gpt-5", user_id="u1", feature="chat")
        assert BudgetRule(limit_usd=1, window=MINUTE).matches(event)
        assert BudgetRule(limit_usd=1, window=MINUTE, model="gpt-5", user_id="u1", feature="chat").matches(event)
        assert not BudgetRule(limit_usd=1, window=MINUTE, model="gpt-4o").matches(event)
        assert not BudgetRule(limit_usd=1, window=MINUTE, user_id="u2").matches(event)
        assert not BudgetRule(limit_usd=1, window=MINUTE, feature="search").matches(event)

    def test_empty_string_filters_match_exactly(self):
        """Verify an empty-string filter does not act as a wildcard."""
        event = make_event(0, model="gpt-5", user_id="u1", feature="chat")
        assert not BudgetRule(limit_usd=1, window=MINUTE, user_id="").matches(event)
        assert not BudgetRule(limit_usd=1, window=MINUTE, feature="").matches(event)
        assert not BudgetRule(limit_usd=1, window=MINUTE, model="").matches(event)
        assert BudgetRule(limit_usd=1, window=MINUTE, user_id="").matches(make_event(0, user_id=""))


class TestResolveScope:
    """Test scope key derivation."""

    def test_global_scope(self):
        """Verify global scope ignores event attribution."""
        rule = BudgetRule(limit_usd=1, window=MINUTE)
        scope = resolve_scope(rule, "budget", make_event(0))
        assert scope.key == "budget|global"
        assert scope.user_id is None
        assert scope.feature is None

    def test_global_scope_keeps_rule_filters(self):
        """Verify static filters become the scope's query dimensions."""
        rule = BudgetRule(limit_usd=1, window=MINUTE, user_id="u1", feature="chat")
        scope = resolve_scope(rule, "budget", make_event(0))
        assert (scope.user_id, scope.feature) == ("u1", "chat")

    def test_user_scope(self):
        """Verify user scope keys on the event's user."""
        rule = BudgetRule(limit_usd=1, window=MINUTE, scope_by=ScopeBy.USER)
        scope = resolve_scope(rule, "r", make_event(0, user_id="alice", feature="chat"))
        assert scope.key == "r|user:alice"
        assert scope.user_id == "alice"
        assert scope.feature is None

    def test_feature_scope(self):
        """Verify feature scope keys on the event's feature."""
        rule = BudgetRule(limit_usd=1, window=MINUTE, scope_by=ScopeBy.FEATURE)
        scope = resolve_scope(rule, "r", make_event(0, feature="search"))
        assert scope.key == "r|feature:search"
        assert scope.feature == "search"

    def test_user_feature_scope(self):
        """Verify combined scope keys on both dimensions."""
        rule = BudgetRule(limit_usd=1, window=MINUTE, scope_by=ScopeBy.USER_FEATURE)
        scope = resolve_scope(rule, "r", make_event(0, user_id="bob", feature="chat"))
        assert scope.key == "r|user:bob|feature:chat"

    def test_missing_dimension_skips_rule(self):
        """Verify a rule does not apply when its scope dimension is missing."""
        user_rule = BudgetRule(limit_usd=1, window=MINUTE, scope_by=ScopeBy.USER)
        feature_rule = BudgetRule(limit_usd=1, window=MINUTE, scope_by=ScopeBy.USER_FEATURE)
        assert resolve_scope(user_rule, "r", make_event(0, user_id=None)) is None
        assert resolve_scope(feature_rule, "r", make_event(0, feature=None)) is None


class TestHighestThreshold:
    """Test threshold ladder lookup."""

    def test_thresholds(self):
        """Verify each percentage maps to the highest threshold reached."""
        assert highest_threshold(0) == 0
        assert highest_threshold(79.99) == 0
        assert highest_threshold(80) == 80
        assert highest_threshold(89.9) == 80
        assert highest_threshold(90) == 90
        assert highest_threshold(100) == 100
        assert highest_threshold(250) == 100


class TestSubscribers:
    """Test callback registry semantics."""

    def test_notify_in_registration_order(self):
        """Verify callbacks run in the order they were registered."""
        calls = []
        subscribers = Subscribers()
        subscribers.subscribe(lambda payload: calls.append(("a", payload)))
        subscribers.subscribe(lambda payload: calls.append(("b", payload)))

        subscribers.notify(1)

        assert calls == [("a", 1), ("b", 1)]

    def test_unsubscribe_is_idempotent_and_exact(self):
        """Verify unsubscribe removes only its own registration, once."""
        calls = []
        callback = calls.append
        subscribers = Subscribers()
        first = subscribers.subscribe(callback)
        subscribers.subscribe(callback)

        first()
        first()
        subscribers.notify("x")

        assert calls == ["x"]
        assert len(subscribers) == 1

    def test_callback_errors_propagate(self):
        """Verify subscriber exceptions are not swallowed."""
        subscribers = Subscribers()

        def broken(payload):
            raise RuntimeError("subscriber failed")

        subscribers.subscribe(broken)
        with pytest.raises(RuntimeError, match="subscriber failed"):
            subscribers.notify(None)


class TestBudgetPolicyEngine:
    """Test rule evaluation against ledger state."""

    def _engine(self, clock, *rules):
        storage = MemoryStorageAdapter()
        return BudgetPolicyEngine(rules, storage, clock), storage

    async def _append(self, storage, seconds, cost, **kwargs):
        return await storage.append(make_event(seconds, cost_usd=cost, **kwargs))

    @pytest.mark.asyncio
    async def test_escalation_fires_each_threshold_once(self, clock):
        """Verify 85% -> 95% -> 105% fires exactly 80, 90, 100 in order."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE, kill_switch=False))
        fired = []
        engine.alert_subscribers.subscribe(lambda alert: fired.append(alert.threshold_percent))

        for cost in (0.85, 0.10, 0.10, 0.01):
            event = await self._append(storage, 0, cost)
            await engine.evaluate(event)

        assert fired == [80, 90, 100]

    @pytest.mark.asyncio
    async def test_single_jump_fires_all_thresholds(self, clock):
        """Verify one call past 100% fires 80, 90 and 100 at once."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE, kill_switch=False))

        event = await self._append(storage, 0, 2.5)
        decision = await engine.evaluate(event)

        assert [alert.threshold_percent for alert in decision.alerts] == [80, 90, 100]
        assert all(alert.usage_usd == pytest.approx(2.5) for alert in decision.alerts)
        assert decision.alerts[0].scope_key == "rule-0|global"
        assert decision.kill_event is None

    @pytest.mark.asyncio
    async def test_state_resets_below_80(self, clock):
        """Verify a new episode re-fires thresholds after usage drops below 80%."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE, kill_switch=False))

        first = await engine.evaluate(await self._append(storage, 0, 0.85))
        assert [a.threshold_percent for a in first.alerts] == [80]
        assert engine.alert_level(0, "rule-0|global") == 80

        clock.advance(minutes=2)
        quiet = await engine.evaluate(await self._append(storage, 120, 0.10))
        assert quiet.alerts == []
        assert engine.alert_level(0, "rule-0|global") == 0

        again = await engine.evaluate(await self._append(storage, 120, 0.75))
        assert [a.threshold_percent for a in again.alerts] == [80]

    @pytest.mark.asyncio
    async def test_state_follows_partial_drop(self, clock):
        """Verify dropping from 100% to 90% re-arms only the 100% alert."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE, kill_switch=False))

        await engine.evaluate(await self._append(storage, 0, 0.6))
        clock.advance(seconds=30)
        await engine.evaluate(await self._append(storage, 30, 0.45))
        assert engine.alert_level(0, "rule-0|global") == 100

        clock.advance(seconds=31)
        decision = await engine.evaluate(await self._append(storage, 61, 0.45))
        assert decision.alerts == []
        assert engine.alert_level(0, "rule-0|global") == 90

        decision = await engine.evaluate(await self._append(storage, 61, 0.2))
        assert [a.threshold_percent for a in decision.alerts] == [100]

    @pytest.mark.asyncio
    async def test_kill_only_when_strictly_over_limit(self, clock):
        """Verify usage equal to the limit does not kill."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE))

        at_limit = await engine.evaluate(await self._append(storage, 0, 1.0))
        assert at_limit.kill_event is None
        assert [a.threshold_percent for a in at_limit.alerts] == [80, 90, 100]

        over = await engine.evaluate(await self._append(storage, 0, 0.01))
        assert over.kill_event == BudgetKillEvent(
            rule=engine.rules[0],
            usage_usd=pytest.approx(1.01),
            limit_usd=1.0,
            scope_key="rule-0|global",
        )

    @pytest.mark.asyncio
    async def test_kill_switch_disabled(self, clock):
        """Verify rules with kill_switch off only alert."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE, kill_switch=False))

        decision = await engine.evaluate(await self._append(storage, 0, 5.0))

        assert decision.kill_event is None
        assert len(decision.alerts) == 3

    @pytest.mark.asyncio
    async def test_first_killing_rule_wins_but_all_rules_alert(self, clock):
        """Verify only the first kill is surfaced while later rules still alert."""
        first = BudgetRule(id="small", limit_usd=0.5, window=MINUTE)
        second = BudgetRule(id="tiny", limit_usd=0.1, window=MINUTE)
        engine, storage = self._engine(clock, first, second)
        kills = []
        engine.kill_subscribers.subscribe(kills.append)

        decision = await engine.evaluate(await self._append(storage, 0, 1.0))

        assert decision.kill_event.rule is first
        assert kills == [decision.kill_event]
        assert [a.scope_key for a in decision.alerts] == ["small|global"] * 3 + ["tiny|global"] * 3

    @pytest.mark.asyncio
    async def test_non_matching_rule_skipped(self, clock):
        """Verify rules filtered to another model ignore the event."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=0.1, window=MINUTE, model="gpt-5"))

        decision = await engine.evaluate(await self._append(storage, 0, 1.0, model="gpt-4o-mini"))

        assert decision.alerts == []
        assert decision.kill_event is None

    @pytest.mark.asyncio
    async def test_model_filter_limits_window_sum(self, clock):
        """Verify a model-filtered rule only sums that model's spend."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE, model="gpt-5", kill_switch=False))
        await self._append(storage, 0, 5.0, model="gpt-4o-mini")

        decision = await engine.evaluate(await self._append(storage, 0, 0.85, model="gpt-5"))

        assert [a.usage_usd for a in decision.alerts] == [pytest.approx(0.85)]

    @pytest.mark.asyncio
    async def test_user_scopes_are_independent(self, clock):
        """Verify per-user scopes sum and alert separately."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE, scope_by="user"))

        a = await engine.evaluate(await self._append(storage, 0, 0.85, user_id="alice"))
        b = await engine.evaluate(await self._append(storage, 0, 0.5, user_id="bob"))
        c = await engine.evaluate(await self._append(storage, 0, 0.5, user_id="bob"))

        assert [x.scope_key for x in a.alerts] == ["rule-0|user:alice"]
        assert b.alerts == []
        assert c.kill_event is None
        assert [x.threshold_percent for x in c.alerts] == [80, 90, 100]

    @pytest.mark.asyncio
    async def test_window_excludes_old_events(self, clock):
        """Verify spend older than the window does not count."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE))
        await self._append(storage, 0, 5.0)

        clock.advance(seconds=61)
        decision = await engine.evaluate(await self._append(storage, 61, 0.1))

        assert decision.alerts == []
        assert decision.kill_event is None

    @pytest.mark.asyncio
    async def test_window_includes_start_boundary(self, clock):
        """Verify an event exactly at now - window still counts."""
        engine, storage = self._engine(clock, BudgetRule(limit_usd=1.0, window=MINUTE))
        await self._append(storage, 0, 0.9)

        clock.advance(seconds=60)
        decision = await engine.evaluate(await self._append(storage, 60, 0.2))

        assert decision.kill_event is not None
        assert decision.kill_event.usage_usd == pytest.approx(1.1)

    @pytest.mark.asyncio
    async def test_explicit_rule_id_in_scope_key(self, clock):
        """Verify explicit ids replace the positional rule id."""
        engine, storage = self._engine(clock, BudgetRule(id="daily", limit_usd=1.0, window=MINUTE))

        decision = await engine.evaluate(await self._append(storage, 0, 0.9))

        assert decision.alerts[0].scope_key == "daily|global"
        assert engine.rule_id(0) == "daily"


class TestBudgetExceededError:
    """Test the kill exception."""

    def test_carries_kill_event(self):
        """Verify the error exposes the kill event and a readable message."""
        event = BudgetKillEvent(
            rule=BudgetRule(limit_usd=1.0, window=MINUTE),
            usage_usd=1.5,
            limit_usd=1.0,
            scope_key="rule-0|global",
        )
        error = BudgetExceededError(event)

        assert error.event is event
        assert "rule-0|global" in str(error)
        assert "$1.000000" in str(error)
        assert "$1.500000" in str(error)
