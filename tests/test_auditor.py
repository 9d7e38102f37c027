"""
End-to-end tests for the occurrence pipeline.

Each test registers a small catalog, fires occurrences through the
Auditor and checks the rows written to the activity log.
"""
import pytest
from sqlalchemy.exc import OperationalError

from activity_audit.config import AuditSettings
from activity_audit.exceptions import PersistenceError, QueryConfigurationError
from activity_audit.hooks import HookName
from activity_audit.models.enums import EventState
from activity_audit.services.auditor import DEFER, HandlerTable
from activity_audit.services.flatten import parse_message, split_updates
from conftest import CLIENT_IP, event, fire, logs, user_group

ADD_USER = event(5154, title="User added to a site")
CANNOT_ADD_USER = event(
    5053,
    title="User cannot be added to site",
    severity="critical",
    error_flag=True,
    event_successor=["user", "add_user_to_blog"],
    message={
        "_main": "Tried to add a user to a site but the operation was unsuccessful.",
        "failed_attempts": "Failed attempts: ###LOG_COUNTER###",
        "user_id": ["object_id"],
    },
)


def blog_events(**extra):
    return user_group(add_user_to_blog=ADD_USER, can_add_user_to_blog=CANNOT_ADD_USER, **extra)


class TestInsert:
    """Events without an error flag always insert."""

    def test_first_occurrence_inserts_one_record(self, db_session, make_auditor):
        """
        INVARIANT: A non-aggregating event writes one new record per occurrence.
        """
        auditor = make_auditor(blog_events())

        assert fire(auditor, "add_user_to_blog", object_id=42) is True

        rows = logs(db_session)
        assert len(rows) == 1
        assert rows[0].event_id == 5154
        assert rows[0].object_id == 42
        assert rows[0].user_id == 7
        assert rows[0].log_counter == 1
        assert rows[0].source_ip == CLIENT_IP
        assert rows[0].event_group == "user"
        assert rows[0].event_slug == "add_user_to_blog"

    def test_repeated_plain_event_inserts_again(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())

        fire(auditor, "add_user_to_blog", object_id=42)
        fire(auditor, "add_user_to_blog", object_id=42)

        assert [r.log_counter for r in logs(db_session)] == [1, 1]

    def test_record_carries_context_columns(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())
        fire(auditor, "add_user_to_blog", object_id=42)

        row = logs(db_session)[0]
        assert row.user_login == "admin"
        assert row.user_role == "administrator"
        assert row.blog_name == "Example"
        assert row.referer_url == "https://example.com/wp-admin/users.php"
        assert row.severity == "notice"

    def test_referer_not_stored_when_disabled(self, db_session, make_auditor):
        auditor = make_auditor(blog_events(), settings=AuditSettings(log_referer=False))
        fire(auditor, "add_user_to_blog", object_id=42)

        assert logs(db_session)[0].referer_url == ""

    def test_event_resolved_by_id(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())

        assert fire(auditor, 5154, object_id=42) is True
        assert logs(db_session)[0].event_slug == "add_user_to_blog"

    def test_unknown_event_releases_the_slot(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())

        assert fire(auditor, "no_such_event", object_id=42) is False
        assert auditor.machine.state == EventState.IDLE
        assert logs(db_session) == []


class TestErrorChains:
    """Error events count on one record until their successor is logged."""

    def test_repeated_failures_increment_one_record(self, db_session, make_auditor):
        """
        INVARIANT: Failures within the window increment the open record.
        """
        auditor = make_auditor(blog_events())

        for _ in range(3):
            fire(auditor, "can_add_user_to_blog", object_id=42)

        rows = logs(db_session)
        assert len(rows) == 1
        assert rows[0].log_counter == 3
        assert parse_message(rows[0].message)["failed_attempts"] == "Failed attempts: 3"
        assert rows[0].updated_at is not None

    def test_counter_sequence_on_single_record(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())

        counters = []
        for _ in range(3):
            fire(auditor, "can_add_user_to_blog", object_id=42)
            counters.append(logs(db_session, 5053)[0].log_counter)

        assert counters == [1, 2, 3]

    def test_inserted_message_carries_first_count(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())
        fire(auditor, "can_add_user_to_blog", object_id=42)

        message = logs(db_session)[0].message
        assert "###LOG_COUNTER###" not in message
        assert parse_message(message)["failed_attempts"] == "Failed attempts: 1"

    def test_success_closes_the_chain(self, db_session, make_auditor):
        """
        INVARIANT: A failure after its successor was logged starts a new record.
        """
        auditor = make_auditor(blog_events())

        fire(auditor, "can_add_user_to_blog", object_id=42)
        fire(auditor, "add_user_to_blog", object_id=42)
        fire(auditor, "can_add_user_to_blog", object_id=42)

        failures = logs(db_session, 5053)
        assert len(failures) == 2
        assert [r.log_counter for r in failures] == [1, 1]

    def test_other_object_starts_its_own_chain(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())

        fire(auditor, "can_add_user_to_blog", object_id=42)
        fire(auditor, "can_add_user_to_blog", object_id=43)

        assert len(logs(db_session, 5053)) == 2

    def test_update_appends_data_blocks(self, db_session, make_auditor, clock):
        auditor = make_auditor(blog_events())

        fire(auditor, "can_add_user_to_blog", object_id=42)
        clock.advance(minutes=5)
        fire(auditor, "can_add_user_to_blog", object_id=42)

        entries = split_updates(logs(db_session)[0].user_data)
        assert len(entries) == 2
        assert entries[0][0] is None
        assert entries[1][0] == "2026-03-02 10:05:00"


class TestDisabledEvents:
    def test_logged_in_event_is_disabled_for_visitors(self, db_session, make_auditor, anonymous_context):
        """
        INVARIANT: A definition failing a pre-check is disabled and never logged.
        """
        events = user_group(member_only=event(5090, user_state="logged_in"))
        auditor = make_auditor(events, context=anonymous_context)

        assert auditor.registry.get_by_id(5090).disabled is True
        assert fire(auditor, "member_only", object_id=42) is False
        assert auditor.machine.last_outcome == EventState.SUPPRESSED
        assert logs(db_session) == []

    def test_active_loggable_filter_suppresses(self, db_session, make_auditor, hooks):
        hooks.add_filter(HookName.ACTIVE_LOGGABLE, lambda loggable, event_id, *a: event_id != 5154, 10, 2)
        auditor = make_auditor(blog_events())

        assert fire(auditor, "add_user_to_blog", object_id=42) is False
        assert logs(db_session) == []


class TestIgnorable:
    def test_ignorable_condition_skips_the_occurrence(self, db_session, make_auditor):
        """
        INVARIANT: An ignorable occurrence is skipped but the event stays enabled.
        """
        events = user_group(promoted=event(5091, user_caps__in=["edit_users"]))
        auditor = make_auditor(events)

        assert fire(auditor, "promoted", object_id=42) is False
        assert auditor.registry.get_by_id(5091).disabled is False

        assert fire(auditor, "promoted", object_id=7) is True
        assert [r.object_id for r in logs(db_session)] == [7]

    def test_log_ignorable_filter_has_final_say(self, db_session, make_auditor, hooks):
        hooks.add_filter(HookName.LOG_IGNORABLE, lambda ignorable, *a: True)
        auditor = make_auditor(blog_events())

        assert fire(auditor, "add_user_to_blog", object_id=42) is False
        assert logs(db_session) == []

    def test_unchanged_update_info_is_not_logged(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())

        assert fire(auditor, "add_user_to_blog", object_id=42, update_info="") is False
        assert logs(db_session) == []


class TestAggregatable:
    def test_aggregatable_event_counts_on_latest_record(self, db_session, make_auditor):
        auditor = make_auditor(user_group(viewed=event(5092, is_aggregatable=True)))

        fire(auditor, "viewed", object_id=42)
        fire(auditor, "viewed", object_id=42)

        rows = logs(db_session)
        assert len(rows) == 1
        assert rows[0].log_counter == 2

    def test_aggregation_off_inserts(self, db_session, make_auditor):
        auditor = make_auditor(
            user_group(viewed=event(5092, is_aggregatable=True)),
            settings=AuditSettings(log_aggregation=False),
        )

        fire(auditor, "viewed", object_id=42)
        fire(auditor, "viewed", object_id=42)

        assert len(logs(db_session)) == 2


class TestMessages:
    def test_main_message_prefixed_with_role(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())
        fire(auditor, "add_user_to_blog", object_id=42)

        fields = parse_message(logs(db_session)[0].message)
        assert fields["_main"] == "An Administrator event 5154 happened"
        assert fields["user_id"] == "User ID: 42"

    def test_placeholder_replaced_with_target_login(self, db_session, make_auditor):
        events = user_group(edited=event(5093, message={"_main": "Edited the profile of (%s)"}))
        auditor = make_auditor(events)
        fire(auditor, "edited", object_id=42)

        assert parse_message(logs(db_session)[0].message)["_main"] == (
            "An Administrator edited the profile of ---bob---"
        )

    def test_placeholder_dropped_without_target(self, db_session, make_auditor):
        events = user_group(edited=event(5093, message={"_main": "Edited the profile of (%s)"}))
        auditor = make_auditor(events)
        fire(auditor, "edited", object_id=999)

        assert parse_message(logs(db_session)[0].message)["_main"] == (
            "An Administrator edited the profile of"
        )

    def test_missing_field_is_left_out(self, db_session, make_auditor):
        events = user_group(edited=event(5093, message={"_main": "Edited", "nickname": ["nickname"]}))
        auditor = make_auditor(events)
        fire(auditor, "edited", object_id=42)

        assert "nickname" not in parse_message(logs(db_session)[0].message)

    def test_override_replaces_definition_message(self, db_session, make_auditor):
        auditor = make_auditor(blog_events())
        active = auditor.setup_event_args("user", {"object_id": 42})
        active.override("message", "Moved a user between sites")
        auditor.log_active_event("user", "add_user_to_blog")

        assert parse_message(logs(db_session)[0].message)["_main"] == (
            "An Administrator moved a user between sites"
        )


class TestHandlers:
    def test_handler_fills_and_logs(self, db_session, make_auditor, hooks):
        table = HandlerTable("user")

        @table.on("add_user_to_blog")
        def added(audit, active, user_id):
            active.update(object_id=user_id)

        auditor = make_auditor(blog_events(), handlers=[table])
        hooks.do_action("add_user_to_blog", 42, "editor", 1)

        assert logs(db_session)[0].object_id == 42
        assert auditor.machine.state == EventState.IDLE

    def test_handler_returning_false_drops(self, db_session, make_auditor, hooks):
        table = HandlerTable("user")
        table.register("add_user_to_blog", lambda audit, active, user_id: False)

        auditor = make_auditor(blog_events(), handlers=[table])
        hooks.do_action("add_user_to_blog", 42)

        assert logs(db_session) == []
        assert auditor.machine.state == EventState.IDLE

    def test_filter_handler_passes_value_through(self, db_session, make_auditor, hooks):
        table = HandlerTable("user")

        @table.on("can_add_user_to_blog")
        def refused(audit, active, retval, user_id):
            active.update(object_id=user_id)

        events = blog_events()
        events["users"]["events"]["can_add_user_to_blog"] = dict(
            CANNOT_ADD_USER, event_handler={"hook": "filter", "num_args": 2}
        )
        make_auditor(events, handlers=[table])

        assert hooks.apply_filters("can_add_user_to_blog", "refused", 42) == "refused"
        assert logs(db_session)[0].event_id == 5053

    def test_handler_error_stays_out_of_the_host(self, db_session, make_auditor, hooks):
        """
        INVARIANT: A failing handler never raises into the host and frees the slot.
        """
        table = HandlerTable("user")

        @table.on("add_user_to_blog")
        def added(audit, active, user_id):
            active.update(object_id=int(user_id))

        auditor = make_auditor(blog_events(), handlers=[table])
        hooks.do_action("add_user_to_blog", "not-a-number")

        assert logs(db_session) == []
        assert auditor.machine.state == EventState.IDLE

        hooks.do_action("add_user_to_blog", 43)
        assert [r.object_id for r in logs(db_session)] == [43]

    def test_handler_error_raises_in_debug_mode(self, make_auditor, hooks):
        table = HandlerTable("user")
        table.register("add_user_to_blog", lambda audit, active, user_id: int(user_id))

        auditor = make_auditor(blog_events(), handlers=[table], settings=AuditSettings(debug=True))
        with pytest.raises(ValueError):
            hooks.do_action("add_user_to_blog", "not-a-number")
        assert auditor.machine.state == EventState.IDLE

    def test_query_configuration_error_reaches_the_host(self, make_auditor, hooks):
        table = HandlerTable("user")

        @table.on("add_user_to_blog")
        def misconfigured(audit, active, user_id):
            raise QueryConfigurationError("Unknown activity log column 'nope'")

        auditor = make_auditor(blog_events(), handlers=[table])
        with pytest.raises(QueryConfigurationError):
            hooks.do_action("add_user_to_blog", 42)
        assert auditor.machine.state == EventState.IDLE

    def test_definition_callback_is_used_without_table(self, db_session, make_auditor, hooks):
        def callback(audit, active, user_id):
            active.update(object_id=user_id)

        events = user_group(add_user_to_blog=dict(ADD_USER, event_handler={"callback": callback}))
        make_auditor(events)
        hooks.do_action("add_user_to_blog", 42)

        assert logs(db_session)[0].object_id == 42

    def test_disabled_event_has_no_handler_attached(self, make_auditor, hooks, anonymous_context):
        table = HandlerTable("user")
        table.register("member_only", lambda audit, active: None)

        make_auditor(user_group(member_only=event(5090, user_state="logged_in")),
                     handlers=[table], context=anonymous_context)

        assert not hooks.has_hook("member_only")


class TestDeferred:
    def make(self, make_auditor, context):
        table = HandlerTable("user")

        @table.on("grant_role")
        def grant(audit, active, user_id):
            active.update(object_id=user_id)
            return DEFER

        @table.on("granted_role")
        def granted(audit, active, user_id):
            audit.clear_deferred("user", "grant_role")
            active.update(object_id=user_id)

        events = user_group(grant_role=event(5094), granted_role=event(5095))
        return make_auditor(events, handlers=[table], context=context)

    def test_deferred_event_logged_at_redirect(self, db_session, make_auditor, context, hooks):
        """
        INVARIANT: A deferred event is logged once, at the next redirect.
        """
        auditor = self.make(make_auditor, context)

        hooks.do_action("grant_role", 42)
        assert logs(db_session) == []
        assert len(auditor.deferred) == 1

        assert hooks.apply_filters(HookName.WP_REDIRECT, "/wp-admin/users.php", 302) == "/wp-admin/users.php"
        assert [r.event_id for r in logs(db_session)] == [5094]
        assert auditor.deferred == {}

        hooks.apply_filters(HookName.WP_REDIRECT, "/wp-admin/", 302)
        assert len(logs(db_session)) == 1

    def test_success_clears_deferred_event(self, db_session, make_auditor, context, hooks):
        self.make(make_auditor, context)

        hooks.do_action("grant_role", 42)
        hooks.do_action("granted_role", 42)
        hooks.apply_filters(HookName.WP_REDIRECT, "/wp-admin/", 302)

        assert [r.event_id for r in logs(db_session)] == [5095]

    def test_public_requests_replay_on_template_redirect(self, db_session, make_auditor, anonymous_context, hooks):
        self.make(make_auditor, anonymous_context)

        hooks.do_action("grant_role", 42)
        hooks.do_action(HookName.TEMPLATE_REDIRECT)

        assert [r.event_id for r in logs(db_session)] == [5094]


class TestPersistenceFailures:
    def broken_insert(self, auditor, monkeypatch):
        def insert(values):
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        monkeypatch.setattr(auditor.repository, "insert", insert)

    def test_failure_is_reported_through_hook(self, make_auditor, hooks, monkeypatch):
        failures = []
        hooks.add_action(HookName.LOG_SAVE_FAILED, lambda event_id, *a: failures.append(event_id))
        auditor = make_auditor(blog_events())
        self.broken_insert(auditor, monkeypatch)

        assert fire(auditor, "add_user_to_blog", object_id=42) is False
        assert failures == [5154]
        assert auditor.machine.last_outcome == EventState.FAILED
        assert auditor.machine.state == EventState.IDLE

    def test_failure_raises_in_debug_mode(self, make_auditor, monkeypatch):
        auditor = make_auditor(blog_events(), settings=AuditSettings(debug=True))
        self.broken_insert(auditor, monkeypatch)

        with pytest.raises(PersistenceError) as exc:
            fire(auditor, "add_user_to_blog", object_id=42)
        assert exc.value.event_id == 5154

    def test_saved_hook_receives_record(self, make_auditor, hooks):
        saved = []
        hooks.add_action(HookName.LOG_SAVED, lambda log, active: saved.append(log.event_id))
        auditor = make_auditor(blog_events())

        fire(auditor, "add_user_to_blog", object_id=42)
        assert saved == [5154]


class TestHostCallbackErrors:
    """Errors raised by host callbacks never leave the active slot occupied."""

    def test_raising_loggable_filter_frees_the_slot(self, db_session, make_auditor, hooks):
        """
        INVARIANT: After a failed occurrence the next occurrence is still logged.
        """
        calls = []

        def flaky(loggable, *args):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("policy service unavailable")
            return loggable

        hooks.add_filter(HookName.ACTIVE_LOGGABLE, flaky)
        table = HandlerTable("user")
        table.register("add_user_to_blog", lambda audit, active, user_id: active.update(object_id=user_id))
        auditor = make_auditor(blog_events(), handlers=[table])

        hooks.do_action("add_user_to_blog", 42)
        assert auditor.machine.state == EventState.IDLE
        assert auditor.machine.last_outcome == EventState.FAILED

        hooks.do_action("add_user_to_blog", 43)
        assert [r.object_id for r in logs(db_session)] == [43]

    def test_raising_ignorable_filter_frees_the_slot(self, db_session, make_auditor, hooks):
        def broken(ignorable, *args):
            raise RuntimeError("rule engine down")

        hooks.add_filter(HookName.LOG_IGNORABLE, broken)
        auditor = make_auditor(blog_events())

        assert fire(auditor, "add_user_to_blog", object_id=42) is False
        assert auditor.machine.state == EventState.IDLE

        hooks.remove_hook(HookName.LOG_IGNORABLE, broken)
        assert fire(auditor, "add_user_to_blog", object_id=43) is True

    def test_raising_saved_listener_keeps_the_write(self, db_session, make_auditor, hooks):
        def notifier(log, active):
            raise RuntimeError("notifier down")

        hooks.add_action(HookName.LOG_SAVED, notifier)
        auditor = make_auditor(blog_events())

        assert fire(auditor, "add_user_to_blog", object_id=42) is True
        assert auditor.machine.state == EventState.IDLE
        assert auditor.machine.last_outcome == EventState.LOGGED

        assert fire(auditor, "add_user_to_blog", object_id=43) is True
        assert [r.object_id for r in logs(db_session)] == [42, 43]

    def test_raising_save_failed_listener_is_contained(self, make_auditor, hooks, monkeypatch):
        def alert(event_id, *args):
            raise RuntimeError("pager down")

        hooks.add_action(HookName.LOG_SAVE_FAILED, alert)
        auditor = make_auditor(blog_events())
        monkeypatch.setattr(auditor.repository, "insert", lambda values: None)

        assert fire(auditor, "add_user_to_blog", object_id=42) is False
        assert auditor.machine.state == EventState.IDLE

    def test_assembly_error_reports_save_failure(self, db_session, make_auditor, hooks, monkeypatch):
        failures = []
        hooks.add_action(HookName.LOG_SAVE_FAILED, lambda event_id, active, error: failures.append(error))
        auditor = make_auditor(blog_events())

        def broken(active):
            raise KeyError("user_login")
        monkeypatch.setattr(auditor.assembler, "build_insert", broken)

        assert fire(auditor, "add_user_to_blog", object_id=42) is False
        assert isinstance(failures[0], KeyError)
        assert auditor.machine.last_outcome == EventState.FAILED
        assert logs(db_session) == []

    def test_errors_raise_in_debug_mode(self, make_auditor, hooks):
        hooks.add_action(HookName.LOG_SAVED, lambda log, active: 1 / 0)
        auditor = make_auditor(blog_events(), settings=AuditSettings(debug=True))

        with pytest.raises(ZeroDivisionError):
            fire(auditor, "add_user_to_blog", object_id=42)
        assert auditor.machine.state == EventState.IDLE
