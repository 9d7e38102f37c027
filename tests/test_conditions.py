"""Tests for pre-check and ignorable condition evaluation."""
import pytest

from activity_audit.config import AuditSettings
from activity_audit.context import RequestContext, ScreenFlags, UserRecord
from activity_audit.hooks import HookName
from activity_audit.models.definitions import EventConditions, EventDefinition
from activity_audit.models.enums import ConditionPhase
from activity_audit.services.conditions import PredicateEvaluator


def definition(**conditions):
    return EventDefinition(
        id=5100, slug="test_event", group="user", severity="critical",
        message={"_main": "Test"}, conditions=EventConditions(**conditions),
    )


@pytest.fixture
def evaluator(context, hooks, users):
    return PredicateEvaluator(context, AuditSettings(), hooks, users)


def evaluator_for(context, hooks, users=None, settings=None):
    return PredicateEvaluator(context, settings or AuditSettings(), hooks, users)


class TestPhases:
    def test_phases_are_disjoint(self, evaluator):
        """
        INVARIANT: A condition belongs to exactly one phase.
        """
        assert not set(evaluator.pre_check_names) & set(evaluator.ignorable_names)
        assert "user_caps__in" in evaluator.ignorable_names
        assert "user_state" in evaluator.pre_check_names

    def test_pre_check_valid_by_default(self, evaluator):
        assert evaluator.is_valid(definition()) is True

    def test_ignorable_false_by_default(self, evaluator):
        assert evaluator.is_ignorable(definition(), {"object_id": 42}) is False

    def test_pre_check_condition_not_evaluated_per_occurrence(self, evaluator):
        """
        INVARIANT: A pre-check condition never makes an occurrence ignorable.
        """
        assert evaluator.is_ignorable(definition(user_state="logged_out"), {"object_id": 42}) is False

    def test_failed_predicate_is_inverted_in_ignorable_phase(self, evaluator):
        """
        INVARIANT: An ignorable-phase predicate returning False marks the occurrence ignorable.
        """
        data = {"object_id": 42, "post_type": "post"}

        assert evaluator.is_ignorable(definition(post_type__in=["page"]), data) is True
        assert evaluator.is_ignorable(definition(post_type__in=["post"]), data) is False
        assert evaluator.is_ignorable(definition(post_type__not_in=["post"]), data) is True

    def test_missing_log_value_is_not_ignorable(self, evaluator):
        assert evaluator.is_ignorable(definition(post_type__in=["page"]), {"object_id": 42}) is False

    def test_condition_filter_overrides_result(self, hooks, anonymous_context):
        hooks.add_filter(HookName.condition("user_state"), lambda valid, *a: True)
        evaluator = evaluator_for(anonymous_context, hooks)

        assert evaluator.is_valid(definition(user_state="logged_in")) is True

    def test_filter_sees_default_for_conditions_without_predicate(self, evaluator, hooks):
        seen = []
        hooks.add_filter(HookName.condition("custom_flag"), lambda ignorable, *a: seen.append(ignorable) or ignorable)

        evaluator.register_condition("custom_flag", default=None)
        evaluator.is_ignorable(definition(), {"object_id": 42})
        assert seen == [False]


class TestCustomConditions:
    def test_registered_predicate_runs_in_its_phase(self, evaluator):
        evaluator.register_condition(
            "only_weekends", default=False,
            predicate=lambda value, check: not value,
            phase=ConditionPhase.PRE_CHECK,
        )

        assert "only_weekends" in evaluator.pre_check_names
        assert evaluator.is_valid(definition(only_weekends=True)) is False
        assert evaluator.is_ignorable(definition(only_weekends=True), {}) is False

    def test_predicate_error_counts_as_valid(self, evaluator):
        def broken(value, check):
            raise ValueError("bad data")

        evaluator.register_condition("fragile", default=1, predicate=broken)
        assert evaluator.is_ignorable(definition(fragile=1), {}) is False


class TestScreen:
    @pytest.mark.parametrize("screens,flags,expected", [
        (["admin"], ScreenFlags(is_admin=True), True),
        (["admin"], ScreenFlags(), False),
        (["public"], ScreenFlags(), True),
        (["public"], ScreenFlags(is_admin=True), False),
        (["user"], ScreenFlags(is_user_admin=True), True),
        (["multisite"], ScreenFlags(is_multisite=True), True),
        (["multisite"], ScreenFlags(is_admin=True), False),
        (["admin", "multisite"], ScreenFlags(is_admin=True), False),
        (["network"], ScreenFlags(is_network_admin=True, is_multisite=True), True),
        (["network"], ScreenFlags(is_multisite=True), True),
        (["not-multisite"], ScreenFlags(is_multisite=True), False),
        (["not-multisite"], ScreenFlags(), True),
        (["main_site"], ScreenFlags(is_main_site=False), False),
    ])
    def test_screen(self, hooks, screens, flags, expected):
        evaluator = evaluator_for(RequestContext(screen=flags), hooks)
        assert evaluator.is_valid(definition(screen=screens)) is expected

    def test_async_requests_skip_screen_check(self, hooks):
        evaluator = evaluator_for(RequestContext(doing_async=True), hooks)
        assert evaluator.is_valid(definition(screen=["admin"])) is True

    def test_pagenow(self, hooks):
        evaluator = evaluator_for(RequestContext(pagenow="users.php"), hooks)

        assert evaluator.is_valid(definition(pagenow=["users.php"])) is True
        assert evaluator.is_valid(definition(pagenow=["post.php"])) is False


class TestUser:
    def test_user_state(self, hooks, admin):
        logged_in = evaluator_for(RequestContext(user=admin), hooks)
        visitor = evaluator_for(RequestContext(), hooks)

        assert logged_in.is_valid(definition(user_state="logged_in")) is True
        assert visitor.is_valid(definition(user_state="logged_in")) is False
        assert logged_in.is_valid(definition(user_state="logged_out")) is False
        assert visitor.is_valid(definition(user_state="logged_out")) is True
        assert visitor.is_valid(definition(user_state="")) is False

    def test_logged_in_user_caps(self, hooks, admin):
        logged_in = evaluator_for(RequestContext(user=admin), hooks)
        visitor = evaluator_for(RequestContext(), hooks)

        assert logged_in.is_valid(definition(logged_in_user_caps=["edit_users"])) is True
        assert logged_in.is_valid(definition(logged_in_user_caps=["manage_network"])) is False
        assert visitor.is_valid(definition(logged_in_user_caps=["read"])) is False

    def test_target_user_caps(self, evaluator):
        assert evaluator.is_ignorable(definition(user_caps__in=["read"]), {"object_id": 42}) is False
        assert evaluator.is_ignorable(definition(user_caps__in=["edit_users"]), {"object_id": 42}) is True
        assert evaluator.is_ignorable(definition(user_caps__not_in=["read"]), {"object_id": 42}) is True
        assert evaluator.is_ignorable(definition(user_caps__in=["read"]), {"object_id": 0}) is True

    def test_can_enable(self, evaluator):
        assert evaluator.is_valid(definition(can_enable=False)) is False


class TestPairs:
    def test_event_id_not_in(self, evaluator):
        assert evaluator.is_valid(definition(event_id__not_in=[5100])) is False
        assert evaluator.is_valid(definition(event_id__not_in=[5200])) is True

    def test_event_severity(self, evaluator):
        assert evaluator.is_valid(definition(event_severity__in=["CRITICAL"])) is True
        assert evaluator.is_valid(definition(event_severity__not_in=["critical"])) is False

    def test_client_ip(self, evaluator):
        assert evaluator.is_valid(definition(client_ip__not_in=["203.0.113.5"])) is False
        assert evaluator.is_valid(definition(client_ip__in=["198.51.100.1"])) is False

    def test_weekdays(self, evaluator):
        assert evaluator.is_valid(definition(weekdays__in=["monday"])) is True
        assert evaluator.is_valid(definition(weekdays__in=["sunday", "saturday"])) is False
        assert evaluator.is_valid(definition(weekdays__not_in=["mon"])) is False

    def test_page_error_code(self, hooks):
        evaluator = evaluator_for(RequestContext(page_error_code=404), hooks)

        assert evaluator.is_ignorable(definition(page_error_code__in=[404]), {}) is False
        assert evaluator.is_ignorable(definition(page_error_code__not_in=["404"]), {}) is True

    def test_roles_match_any(self, evaluator):
        data = {"object_id": 42, "roles": ["subscriber", "author"]}

        assert evaluator.is_ignorable(definition(roles__in=["author"]), data) is False
        assert evaluator.is_ignorable(definition(roles__not_in=["author"]), data) is True

    def test_site_conditions_on_multisite(self, evaluator):
        assert evaluator.is_ignorable(definition(site_id__in=[2]), {"object_id": 42, "blog_id": 1}) is True
        assert evaluator.is_ignorable(definition(site_name__in=["example"]), {"site_name": "Example"}) is False


class TestSettings:
    def test_excluded_event_ids(self, context, hooks):
        evaluator = evaluator_for(context, hooks, settings=AuditSettings(excluded_event_ids=[5100]))
        assert evaluator.is_valid(definition(event_id__not_in=[])) is False

    def test_user_record_state(self):
        assert UserRecord(id=0).logged_in is False
        assert UserRecord(id=3).logged_in is True
