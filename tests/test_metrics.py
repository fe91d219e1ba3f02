"""Tests for metric types: attributes, series and the write pipeline."""

import re
import time
from unittest.mock import MagicMock

import pytest

from influxer.errors import (
    ClientError,
    MetricsAborted,
    MetricsAlreadyWritten,
    MetricsError,
    MetricsInvalid,
    SeriesResolutionError,
)
from influxer.metrics.base import Attribute, Metrics, MetricState, after_write, before_write, validator
from influxer.metrics.registry import SchemaRegistry
from influxer.metrics.relation import Relation
from influxer.metrics.series import ComputedRule, FixedName, NameList, Pattern


class TestClassInterface:
    """The base type exposes declarations, queries and writes."""

    @pytest.mark.core
    @pytest.mark.parametrize(
        "name",
        ["declare_attributes", "set_series", "series", "all", "where", "merge", "time",
         "past", "since", "limit", "select", "delete_all", "count", "write", "write_or_raise"],
    )
    def test_class_responds_to(self, name: str) -> None:
        assert hasattr(Metrics, name)

    @pytest.mark.core
    @pytest.mark.parametrize(
        "name", ["write", "write_or_raise", "persisted", "series", "is_valid", "is_invalid", "errors"]
    )
    def test_instance_responds_to(self, name: str, dummies_cls: type) -> None:
        assert hasattr(dummies_cls(), name)

    @pytest.mark.core
    def test_all_returns_relation(self, dummies_cls: type) -> None:
        assert isinstance(dummies_cls.all(), Relation)

    @pytest.mark.core
    def test_time_is_an_attribute_on_instances(self) -> None:
        assert isinstance(Metrics.__dict__["time"], Attribute)
        assert Metrics(time=5).time == 5

    @pytest.mark.core
    def test_time_is_a_query_on_the_class(self, dummies_cls: type) -> None:
        assert dummies_cls.time("hour").to_sql() == 'select * from "dummies" group by time(1h)'


class TestAttributes:
    """Tests for declared attributes and the attribute store."""

    @pytest.mark.core
    def test_accessors_read_and_write_store(self, dummies_cls: type) -> None:
        metric = dummies_cls()
        metric.user_id = 3
        assert metric.user_id == 3
        assert metric.attributes == {"user_id": 3}

    @pytest.mark.core
    def test_unset_attribute_reads_none(self, dummies_cls: type) -> None:
        assert dummies_cls().dummy_id is None

    @pytest.mark.core
    def test_bulk_construction_from_mapping(self, dummies_cls: type) -> None:
        metric = dummies_cls({"user_id": 1}, dummy_id=2)
        assert (metric.user_id, metric.dummy_id) == (1, 2)

    @pytest.mark.core
    def test_undeclared_names_stay_plain_entries(self, dummies_cls: type) -> None:
        metric = dummies_cls(user_id=1, extra="x")
        assert metric.attributes["extra"] == "x"
        assert not hasattr(metric, "extra")

    @pytest.mark.core
    def test_attributes_are_inherited(self, dummies_cls: type, registry: SchemaRegistry) -> None:
        class Child(dummies_cls):
            pass

        Child.declare_attributes("page_id")
        assert Child(user_id=1, page_id=2).page_id == 2
        assert Child.schema().all_attributes() == ["time", "user_id", "dummy_id", "page_id"]

    @pytest.mark.core
    def test_declaring_reserved_name_raises(self, dummies_cls: type) -> None:
        with pytest.raises(ValueError):
            dummies_cls.declare_attributes("series")

    @pytest.mark.core
    def test_declaring_name_of_class_member_raises(self, dummies_cls: type) -> None:
        with pytest.raises(ValueError):
            dummies_cls.declare_attributes("set_series")

    @pytest.mark.core
    def test_query_names_can_be_attributes(self, dummies_cls: type) -> None:
        dummies_cls.declare_attributes("count")
        assert dummies_cls(count=4).count == 4
        assert callable(dummies_cls.count)


class TestSetSeries:
    """Tests for series declarations on metric types."""

    @pytest.mark.core
    def test_series_derived_from_class_name(self, dummy_metrics_cls: type) -> None:
        assert dummy_metrics_cls().series == '"dummy"'

    @pytest.mark.core
    def test_series_from_keyword(self, dummies_cls: type) -> None:
        assert dummies_cls().series == '"dummies"'

    @pytest.mark.core
    def test_series_as_regex(self, registry: SchemaRegistry) -> None:
        class Anything(Metrics, registry=registry):
            pass

        Anything.set_series(re.compile(r"^.*$"))
        assert Anything().series == "/^.*$/"
        assert isinstance(Anything.series, Pattern)

    @pytest.mark.core
    def test_series_with_quotes(self, registry: SchemaRegistry) -> None:
        class Quoted(Metrics, registry=registry, series='dummy "A"'):
            pass

        assert Quoted().series == '"dummy \\"A\\""'

    @pytest.mark.core
    def test_several_series(self, registry: SchemaRegistry) -> None:
        class Both(Metrics, registry=registry, series=["events", "errors"]):
            pass

        assert Both().series == 'merge("events","errors")'
        assert Both.series == NameList(("events", "errors"))

    @pytest.mark.core
    def test_several_series_with_quotes(self, registry: SchemaRegistry) -> None:
        class Both(Metrics, registry=registry):
            pass

        Both.set_series('dummy "A"', 'dummy "B"')
        assert Both().series == 'merge("dummy \\"A\\"","dummy \\"B\\"")'

    @pytest.mark.core
    def test_series_from_callable(self, registry: SchemaRegistry) -> None:
        class PerUser(Metrics, registry=registry, attributes=("user_id", "test_id")):
            pass

        PerUser.set_series(lambda m: f"test/{m.test_id}/user/{m.user_id}")

        assert isinstance(PerUser.series, ComputedRule)
        assert PerUser(user_id=2, test_id=123).series == '"test/123/user/2"'

    @pytest.mark.core
    def test_no_arguments_rederives_from_name(self, dummy_metrics_cls: type) -> None:
        dummy_metrics_cls.set_series("other")
        dummy_metrics_cls.set_series()
        assert dummy_metrics_cls.series == FixedName("dummy")


class TestSeriesInheritance:
    """Subtypes derive their own series or inherit the parent's."""

    @pytest.mark.core
    def test_suffixed_subtype_derives_own_name(self, dummies_cls: type) -> None:
        class VisitMetrics(dummies_cls):
            pass

        assert VisitMetrics().series == '"visit"'

    @pytest.mark.core
    def test_plain_subtype_inherits_parent_series(self, dummies_cls: type) -> None:
        class Child(dummies_cls):
            pass

        assert Child().series == '"dummies"'

    @pytest.mark.core
    def test_inherited_series_follows_later_parent_changes(self, dummies_cls: type) -> None:
        class Child(dummies_cls):
            pass

        dummies_cls.set_series("renamed")
        assert Child().series == '"renamed"'

    @pytest.mark.core
    def test_inherited_computed_rule_is_live(self, registry: SchemaRegistry) -> None:
        class Parent(Metrics, registry=registry, attributes=("n",)):
            pass

        Parent.set_series(lambda m: f"n{m.n}")

        class Child(Parent):
            pass

        assert Child.series is Parent.series
        assert Child(n=7).series == '"n7"'

    @pytest.mark.core
    def test_subtype_of_derived_parent_inherits_derived_name(self, dummy_metrics_cls: type) -> None:
        class Child(dummy_metrics_cls):
            pass

        assert Child().series == '"dummy"'

    @pytest.mark.core
    def test_each_suffixed_level_derives_independently(self, dummy_metrics_cls: type) -> None:
        class PageMetrics(dummy_metrics_cls):
            pass

        class ClickMetrics(PageMetrics):
            pass

        assert PageMetrics().series == '"page"'
        assert ClickMetrics().series == '"click"'

    @pytest.mark.core
    def test_no_spec_in_chain_falls_back_to_class_name(self, registry: SchemaRegistry) -> None:
        class UserVisits(Metrics, registry=registry):
            pass

        assert UserVisits().series == '"user_visits"'

    @pytest.mark.core
    def test_registry_is_inherited(self, dummies_cls: type, registry: SchemaRegistry) -> None:
        class Child(dummies_cls):
            pass

        assert Child in registry
        assert Child().client is registry.client


class TestValidation:
    """Validation gates the write."""

    @pytest.mark.core
    def test_write_returns_false_when_attribute_missing(self, dummy_metrics_cls: type, transport: MagicMock) -> None:
        metric = dummy_metrics_cls(dummy_id=1)
        assert metric.write() is False
        assert len(metric.errors) == 1
        assert metric.errors["user_id"]
        assert metric.state is MetricState.REJECTED
        transport.write_point.assert_not_called()

    @pytest.mark.core
    def test_write_or_raise_raises_when_attribute_missing(self, dummy_metrics_cls: type) -> None:
        with pytest.raises(MetricsInvalid) as excinfo:
            dummy_metrics_cls(user_id=1).write_or_raise()
        assert len(excinfo.value.errors) == 1

    @pytest.mark.core
    def test_rejected_metric_stays_rejected(self, dummy_metrics_cls: type, transport: MagicMock) -> None:
        metric = dummy_metrics_cls(dummy_id=1)
        assert metric.write() is False
        metric.user_id = 2

        assert metric.write() is False
        with pytest.raises(MetricsInvalid):
            metric.write_or_raise()
        assert metric.is_valid()
        assert metric.state is MetricState.REJECTED
        transport.write_point.assert_not_called()

    @pytest.mark.core
    def test_is_valid_moves_new_to_validated(self, dummy_metrics_cls: type) -> None:
        metric = dummy_metrics_cls(dummy_id=1, user_id=1)
        assert metric.state is MetricState.NEW
        assert metric.is_valid()
        assert metric.state is MetricState.VALIDATED

    @pytest.mark.core
    def test_validator_methods_report_errors(self, registry: SchemaRegistry) -> None:
        class Positive(Metrics, registry=registry, attributes=("value",)):
            @validator
            def value_is_positive(self) -> None:
                if (self.value or 0) <= 0:
                    self.errors.add("value", "must be positive")

        assert Positive(value=-1).write() is False
        assert Positive(value=1).write()

    @pytest.mark.core
    def test_validates_with_callable(self, dummies_cls: type) -> None:
        dummies_cls.validates_with(lambda m: m.errors.add("base", "never valid"))
        metric = dummies_cls(user_id=1)
        assert metric.is_invalid()
        assert metric.errors.full_messages() == ["base never valid"]


class TestWrite:
    """Tests for committing metrics through the transport."""

    @pytest.mark.core
    def test_write_sends_raw_series_and_attributes(self, dummies_cls: type, transport: MagicMock) -> None:
        point = dummies_cls.write(user_id=1, dummy_id=2)

        transport.write_point.assert_called_once_with("dummies", {"user_id": 1, "dummy_id": 2})
        assert point.persisted
        assert point.user_id == 1
        assert point.dummy_id == 2

    @pytest.mark.core
    def test_class_write_returns_false_when_invalid(self, dummy_metrics_cls: type) -> None:
        assert dummy_metrics_cls.write(dummy_id=2) is False

    @pytest.mark.core
    def test_class_write_or_raise(self, dummy_metrics_cls: type) -> None:
        with pytest.raises(MetricsInvalid):
            dummy_metrics_cls.write_or_raise(dummy_id=2)
        assert dummy_metrics_cls.write_or_raise(dummy_id=2, user_id=1).persisted

    @pytest.mark.core
    def test_write_derived_series(self, dummy_metrics_cls: type, transport: MagicMock) -> None:
        assert dummy_metrics_cls(dummy_id=1, user_id=1).write()
        assert transport.write_point.call_args.args[0] == "dummy"

    @pytest.mark.core
    def test_state_moves_to_committed(self, dummy_metrics_cls: type) -> None:
        metric = dummy_metrics_cls(dummy_id=1, user_id=1)
        metric.write()
        assert metric.state is MetricState.COMMITTED
        assert metric.persisted is True

    @pytest.mark.core
    def test_writing_twice_raises(self, dummy_metrics_cls: type, transport: MagicMock) -> None:
        metric = dummy_metrics_cls(dummy_id=1, user_id=1)
        assert metric.write()
        with pytest.raises(MetricsAlreadyWritten):
            metric.write_or_raise()
        with pytest.raises(MetricsAlreadyWritten):
            metric.write()
        assert transport.write_point.call_count == 1

    @pytest.mark.core
    def test_written_metric_is_read_only(self, dummies_cls: type) -> None:
        metric = dummies_cls.write(user_id=1)
        with pytest.raises(MetricsError):
            metric.user_id = 5

    @pytest.mark.core
    def test_undeclared_attributes_are_not_written(
        self, dummies_cls: type, transport: MagicMock, caplog: pytest.LogCaptureFixture
    ) -> None:
        dummies_cls(user_id=1, extra="x").write()
        transport.write_point.assert_called_once_with("dummies", {"user_id": 1})
        assert "extra" in caplog.text

    @pytest.mark.core
    def test_transport_failure_propagates(self, dummies_cls: type, transport: MagicMock) -> None:
        transport.write_point.side_effect = ClientError("boom")
        metric = dummies_cls(user_id=1)

        with pytest.raises(ClientError):
            metric.write()

        assert metric.state is MetricState.COMMITTING
        assert not metric.persisted

    @pytest.mark.core
    def test_failed_write_can_be_retried(self, dummies_cls: type, transport: MagicMock) -> None:
        transport.write_point.side_effect = [ClientError("boom"), None]
        metric = dummies_cls(user_id=1)
        with pytest.raises(ClientError):
            metric.write()
        assert metric.write() is metric

    @pytest.mark.core
    def test_pattern_series_cannot_be_written(self, dummies_cls: type, transport: MagicMock) -> None:
        dummies_cls.set_series(re.compile("^d"))
        with pytest.raises(SeriesResolutionError):
            dummies_cls.write(user_id=1)
        transport.write_point.assert_not_called()

    @pytest.mark.core
    def test_merge_series_cannot_be_written(self, dummies_cls: type) -> None:
        dummies_cls.set_series("a", "b")
        with pytest.raises(SeriesResolutionError):
            dummies_cls.write(user_id=1)

    @pytest.mark.core
    def test_computed_series_is_written_bare(self, dummies_cls: type, transport: MagicMock) -> None:
        dummies_cls.set_series(lambda m: f"user/{m.user_id}")
        dummies_cls.write(user_id=9)
        assert transport.write_point.call_args.args[0] == "user/9"

    @pytest.mark.core
    def test_write_without_client_raises(self) -> None:
        class Orphan(Metrics, registry=SchemaRegistry(), series="orphans"):
            pass

        with pytest.raises(MetricsError):
            Orphan().write()


class TestHooks:
    """Tests for before/after write hooks."""

    @pytest.mark.core
    def test_before_hook_sets_current_time(self, dummy_metrics_cls: type, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(time, "time", lambda: 1412935810.0)
        metric = dummy_metrics_cls(dummy_id=1, user_id=1)
        metric.write_or_raise()
        assert metric.time == 1412935810.0

    @pytest.mark.core
    def test_hook_changes_are_written(self, dummy_metrics_cls: type, transport: MagicMock, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(time, "time", lambda: 100.0)
        dummy_metrics_cls(dummy_id=1, user_id=1).write()
        assert transport.write_point.call_args.args[1]["time"] == 100.0

    @pytest.mark.core
    def test_hooks_run_in_registration_order(self, dummies_cls: type) -> None:
        calls = []
        dummies_cls.before_write(lambda m: calls.append("first"))
        dummies_cls.before_write(lambda m: calls.append("second"))
        dummies_cls.after_write(lambda m: calls.append(("after", m.persisted)))

        dummies_cls.write(user_id=1)

        assert calls == ["first", "second", ("after", True)]

    @pytest.mark.core
    def test_parent_hooks_run_before_child_hooks(self, dummies_cls: type) -> None:
        calls = []
        dummies_cls.before_write(lambda m: calls.append("parent"))

        class Child(dummies_cls):
            @before_write
            def child_hook(self) -> None:
                calls.append("child")

            @after_write
            def done(self) -> None:
                calls.append("done")

        Child.write(user_id=1)
        assert calls == ["parent", "child", "done"]

    @pytest.mark.core
    def test_overridden_hook_runs_once(self, registry: SchemaRegistry) -> None:
        calls = []

        class ParentMetrics(Metrics, registry=registry):
            @before_write
            def stamp(self) -> None:
                calls.append("parent")

        class ChildMetrics(ParentMetrics):
            @before_write
            def stamp(self) -> None:
                calls.append("child")

        ChildMetrics().write()
        ParentMetrics().write()

        assert calls == ["child", "parent"]

    @pytest.mark.core
    def test_halting_hook_prevents_write(self, dummies_cls: type, transport: MagicMock) -> None:
        dummies_cls.before_write(lambda m: False)
        metric = dummies_cls(user_id=1)

        assert metric.write() is False
        assert not metric.persisted
        transport.write_point.assert_not_called()

    @pytest.mark.core
    def test_halting_hook_raises_on_strict_write(self, dummies_cls: type) -> None:
        dummies_cls.before_write(lambda m: False)
        with pytest.raises(MetricsAborted):
            dummies_cls(user_id=1).write_or_raise()

    @pytest.mark.core
    def test_hooks_do_not_run_when_invalid(self, dummy_metrics_cls: type) -> None:
        metric = dummy_metrics_cls(dummy_id=1)
        metric.write()
        assert metric.time is None
