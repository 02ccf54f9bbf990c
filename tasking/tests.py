import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest import mock

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase, TestCase, override_settings
from django.test.client import Client
from pulp import PulpSolverError

from .allocator import allocate, build_existing_assignment_map
from .capacity import BalancedSiteChooser, CapacityTracker, RoundRobinSiteChooser, check_capacity
from .exceptions import (
    BatchCreateFailure, CapacityExceeded, InvalidStatusTransition, TaskNotFound, ValidationError,
)
from .grouping import group_tasks, overall_status, real_instances, ungroup
from .keys import group_key, key_digest, template_identity_key, template_key_for
from .lifecycle import validate_transition
from .models import Assignee, Attachment, HourlyUpdate, Site, StaffDeployment, Task
from .schemas import (
    AssigneeSchema, AttachmentSchema, BatchResult, GroupedTaskView, HourlyUpdateSchema,
    SiteSchema, TaskInstanceSchema, TaskTemplateSchema,
)
from .services import TaskAssignmentService, TaskBoardService
from .store import OrmAssigneeDirectory, OrmSiteDirectory, OrmTaskStore

DEADLINE = datetime(2026, 11, 15, 10, 0, tzinfo=timezone.utc)
CREATED = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


def make_template(title="Fire Drill", description="desc", task_type="safety", priority="high",
                  deadline=DEADLINE, attachments=()):
    return TaskTemplateSchema(
        title=title,
        description=description,
        task_type=task_type,
        priority=priority,
        deadline=deadline,
        due_date_time=deadline,
        attachments=list(attachments),
    )


def make_task(task_id, title="Fire Drill", description="desc", task_type="safety", priority="high",
              deadline=DEADLINE, assigned_to="a1", assigned_to_name="Alice", site_id="site1",
              site_name="Tower A", client_name="Skyline", status="pending", attachments=(),
              hourly_updates=()):
    return TaskInstanceSchema(
        id=task_id,
        title=title,
        description=description,
        task_type=task_type,
        priority=priority,
        deadline=deadline,
        due_date_time=deadline,
        assigned_to=assigned_to,
        assigned_to_name=assigned_to_name,
        site_id=site_id,
        site_name=site_name,
        client_name=client_name,
        status=status,
        attachments=list(attachments),
        hourly_updates=list(hourly_updates),
        created_at=CREATED,
        updated_at=CREATED,
    )


def make_placeholder(task_id, **kwargs):
    return make_task(task_id, assigned_to="unassigned", assigned_to_name="Unassigned",
                     site_id="unspecified", site_name="Unspecified Site",
                     client_name="Unspecified Client", **kwargs)


def make_site(site_id, name, managers=1, supervisors=2, client_name="Skyline"):
    return SiteSchema(id=site_id, name=name, client_name=client_name,
                      manager_count=managers, supervisor_count=supervisors)


def make_assignee(assignee_id, name, role="supervisor", site_id=None):
    return AssigneeSchema(id=assignee_id, name=name, role=role, site_id=site_id)


def make_attachment(attachment_id, filename="plan.pdf"):
    return AttachmentSchema(id=attachment_id, filename=filename, url=f"/media/{filename}", size=10,
                            type="application/pdf")


class FakeTaskStore:
    """In-memory task store recording batch submissions."""

    def __init__(self, tasks=(), fail_with=None):
        self.tasks = list(tasks)
        self.batches = []
        self.status_updates = []
        self.deleted = []
        self.fail_with = fail_with

    def get_all_tasks(self):
        return list(self.tasks)

    def create_multiple_tasks(self, tasks, created_by, timeout=None):
        self.batches.append(list(tasks))
        if self.fail_with:
            raise self.fail_with
        created = [
            TaskInstanceSchema(id=f"new-{len(self.tasks) + i}", created_at=CREATED, updated_at=CREATED,
                               **item.model_dump())
            for i, item in enumerate(tasks)
        ]
        self.tasks.extend(created)
        return BatchResult(created=len(created), tasks=created)

    def update_task_status(self, task_id, status):
        self.status_updates.append((task_id, status))

    def delete_task(self, task_id):
        self.deleted.append(task_id)

    def update_tasks_status(self, task_ids, status):
        for task_id in task_ids:
            self.update_task_status(task_id, status)
        return len(task_ids)

    def delete_tasks(self, task_ids):
        for task_id in task_ids:
            self.delete_task(task_id)


class FakeSiteDirectory:
    def __init__(self, sites):
        self.sites = list(sites)

    def get_all_sites(self):
        return list(self.sites)


class FakeAssigneeDirectory:
    def __init__(self, assignees):
        self.assignees = list(assignees)

    def get_all_assignees(self):
        return list(self.assignees)


class IdentityKeyTest(SimpleTestCase):
    """Test template identity keys and group keys."""

    def test_template_key_ignores_time_fields(self):
        """Moving the deadline does not make it a different work item."""
        early = make_template(deadline=DEADLINE)
        late = make_template(deadline=DEADLINE + timedelta(days=3))
        self.assertEqual(template_key_for(early), template_key_for(late))

    def test_template_key_varies_with_every_identity_field(self):
        base = template_identity_key("Fire Drill", "desc", "safety", "high")
        self.assertNotEqual(base, template_identity_key("Fire Drill!", "desc", "safety", "high"))
        self.assertNotEqual(base, template_identity_key("Fire Drill", "desc 2", "safety", "high"))
        self.assertNotEqual(base, template_identity_key("Fire Drill", "desc", "training", "high"))
        self.assertNotEqual(base, template_identity_key("Fire Drill", "desc", "safety", "low"))

    def test_separators_in_fields_do_not_collide(self):
        """Underscores and pipes inside fields cannot make two keys collide."""
        first = template_identity_key("a_b", "c", "safety", "high")
        second = template_identity_key("a", "b_c", "safety", "high")
        self.assertNotEqual(first, second)
        self.assertNotEqual(key_digest(first), key_digest(second))

        piped = group_key("x|y", "z", "safety", "high", DEADLINE, "s1")
        shifted = group_key("x", "y|z", "safety", "high", DEADLINE, "s1")
        self.assertNotEqual(key_digest(piped), key_digest(shifted))

    def test_group_key_is_site_and_deadline_scoped(self):
        key = group_key("Fire Drill", "desc", "safety", "high", DEADLINE, "site1")
        self.assertEqual(key, group_key("Fire Drill", "desc", "safety", "high", DEADLINE, "site1"))
        self.assertNotEqual(key, group_key("Fire Drill", "desc", "safety", "high", DEADLINE, "site2"))
        self.assertNotEqual(
            key, group_key("Fire Drill", "desc", "safety", "high", DEADLINE + timedelta(hours=1), "site1")
        )
        self.assertEqual(key_digest(key), key_digest(group_key("Fire Drill", "desc", "safety", "high",
                                                               DEADLINE, "site1")))


class CapacityTrackerTest(SimpleTestCase):
    """Test per-site manager/supervisor slot accounting."""

    def setUp(self):
        self.tower = make_site("tower-a", "Tower A", managers=1, supervisors=2)
        self.mall = make_site("mall", "Harbour Mall", managers=1, supervisors=1)
        self.mgr_x = make_assignee("mgr-x", "MgrX", "manager")
        self.sup_y = make_assignee("sup-y", "SupY", "supervisor")
        self.sup_z = make_assignee("sup-z", "SupZ", "supervisor")
        self.mgr_w = make_assignee("mgr-w", "MgrW", "manager")
        self.assignees = [self.mgr_x, self.sup_y, self.sup_z, self.mgr_w]
        self.tracker = CapacityTracker([self.tower, self.mall], self.assignees)

    def test_fills_single_site_then_rejects_extra_manager(self):
        """MgrX, SupY and SupZ fit Tower A; MgrW no longer does."""
        selected = []
        for candidate in (self.mgr_x, self.sup_y, self.sup_z):
            decision = self.tracker.check(candidate, ["tower-a"], selected)
            self.assertTrue(decision.can_select, decision.reason)
            self.assertEqual(decision.reason, "Can be assigned to Tower A")
            selected.append(candidate.id)

        decision = self.tracker.check(self.mgr_w, ["tower-a"], selected)
        self.assertFalse(decision.can_select)
        self.assertEqual(decision.reason, "Manager limit reached for all selected sites")

    def test_supervisor_limit_reason(self):
        decision = self.tracker.check(self.sup_z, ["mall"], ["sup-y"])
        self.assertFalse(decision.can_select)
        self.assertEqual(decision.reason, "Supervisor limit reached for all selected sites")

    def test_requires_selected_sites(self):
        decision = self.tracker.check(self.mgr_x, [], [])
        self.assertFalse(decision.can_select)
        self.assertIn("select sites first", decision.reason)

    def test_already_selected_assignee_is_never_blocked(self):
        """Deselection stays possible even when the site is over capacity."""
        decision = self.tracker.check(self.mgr_x, ["tower-a"], ["mgr-x", "mgr-w"])
        self.assertTrue(decision.can_select)

    def test_falls_through_to_next_site_with_room(self):
        decision = self.tracker.check(self.mgr_w, ["tower-a", "mall"], ["mgr-x"])
        self.assertTrue(decision.can_select)
        self.assertEqual(decision.reason, "Can be assigned to Harbour Mall")

    def test_round_robin_and_affinity_placement(self):
        """Affinity wins when its site is selected; others cycle by selection index."""
        anchored = make_assignee("sup-a", "SupA", "supervisor", site_id="mall")
        stray = make_assignee("sup-b", "SupB", "supervisor", site_id="elsewhere")
        placement = RoundRobinSiteChooser().place(
            [self.sup_y, anchored, stray], ["tower-a", "mall"], {}
        )
        self.assertEqual([site for _, site in placement], ["tower-a", "mall", "tower-a"])

    def test_usage_counts_by_role(self):
        usage = self.tracker.usage(["tower-a", "mall"], ["mgr-x", "sup-y", "sup-z"])
        self.assertEqual(usage["tower-a"], {"manager": 1, "supervisor": 1})
        self.assertEqual(usage["mall"], {"manager": 0, "supervisor": 1})

    def test_unknown_ids_are_ignored(self):
        usage = self.tracker.usage(["tower-a", "ghost-site"], ["ghost", "mgr-x"])
        self.assertEqual(usage["tower-a"]["manager"], 1)
        self.assertNotIn("ghost-site", self.tracker.slots(["tower-a", "ghost-site"]))

    def test_site_report_remaining_slots(self):
        report = self.tracker.site_report(["tower-a"], ["mgr-x", "sup-y"])
        self.assertEqual(len(report), 1)
        row = report[0]
        self.assertEqual(row.site_name, "Tower A")
        self.assertEqual((row.managers_used, row.managers_remaining), (1, 0))
        self.assertEqual((row.supervisors_used, row.supervisors_remaining), (1, 1))

    def test_check_capacity_function(self):
        decision = check_capacity(self.mgr_w, ["tower-a"], ["mgr-x"], [self.tower], self.assignees)
        self.assertFalse(decision.can_select)


class BalancedSiteChooserTest(SimpleTestCase):
    """Test the linear-programming placement strategy."""

    def setUp(self):
        self.sites = [make_site("s1", "Site 1", managers=1), make_site("s2", "Site 2", managers=1)]
        self.m1 = make_assignee("m1", "M1", "manager", site_id="s1")
        self.m2 = make_assignee("m2", "M2", "manager", site_id="s1")
        self.m3 = make_assignee("m3", "M3", "manager")

    def test_never_exceeds_slots(self):
        slots = {"s1": {"manager": 1, "supervisor": 0}, "s2": {"manager": 1, "supervisor": 0}}
        placement = BalancedSiteChooser().place([self.m1, self.m2, self.m3], ["s1", "s2"], slots)

        placed = [site for _, site in placement if site is not None]
        self.assertEqual(sorted(placed), ["s1", "s2"])
        self.assertEqual([a.id for a, _ in placement], ["m1", "m2", "m3"])

    def test_balanced_strategy_changes_tracker_outcome(self):
        """Round robin stacks both affinity managers on s1; the LP spreads them out."""
        assignees = [self.m1, self.m2, self.m3]

        round_robin = CapacityTracker(self.sites, assignees)
        self.assertTrue(round_robin.check(self.m3, ["s1", "s2"], ["m1", "m2"]).can_select)

        balanced = CapacityTracker(self.sites, assignees, BalancedSiteChooser())
        decision = balanced.check(self.m3, ["s1", "s2"], ["m1", "m2"])
        self.assertFalse(decision.can_select)
        self.assertEqual(decision.reason, "Manager limit reached for all selected sites")

    def test_no_capacity_means_no_placement(self):
        placement = BalancedSiteChooser().place([self.m3], ["s1"], {"s1": {"manager": 0, "supervisor": 0}})
        self.assertEqual(placement, [(self.m3, None)])

    def test_solver_failure_falls_back_to_round_robin(self):
        slots = {"s1": {"manager": 1, "supervisor": 0}, "s2": {"manager": 1, "supervisor": 0}}
        with mock.patch("tasking.capacity.LpProblem.solve", side_effect=PulpSolverError("no solver")):
            placement = BalancedSiteChooser().place([self.m1, self.m3], ["s1", "s2"], slots)
        self.assertEqual(placement, [(self.m1, "s1"), (self.m3, "s2")])

        tracker = CapacityTracker(self.sites, [self.m1, self.m2, self.m3], BalancedSiteChooser())
        with mock.patch("tasking.capacity.LpProblem.solve", side_effect=PulpSolverError("no solver")):
            decision = tracker.check(self.m3, ["s1", "s2"], ["m1", "m2"])
        self.assertTrue(decision.can_select)


class AllocatorTest(SimpleTestCase):
    """Test fan-out of one template across assignees and sites."""

    def setUp(self):
        self.template = make_template("Fire Drill", "desc", "safety", "high",
                                      attachments=[make_attachment("att-1")])
        self.a = make_assignee("a", "A")
        self.b = make_assignee("b", "B")
        self.site1 = make_site("site1", "Site 1", supervisors=5)
        self.site2 = make_site("site2", "Site 2", supervisors=5)
        self.existing = {template_identity_key("Fire Drill", "desc", "safety", "high"): frozenset({"site1"})}

    def test_skips_sites_that_already_have_the_template(self):
        result = allocate(self.template, [self.a, self.b], [self.site1, self.site2], self.existing)

        self.assertEqual(
            [(t.assigned_to, t.site_id) for t in result.created],
            [("a", "site2"), ("b", "site2")],
        )
        self.assertEqual(
            [(p.assignee_id, p.site_id, p.reason) for p in result.skipped],
            [("a", "site1", "duplicate"), ("b", "site1", "duplicate")],
        )
        self.assertIsNone(result.warning)

    def test_skip_is_site_scoped_not_assignee_scoped(self):
        """Any assignee at an already-assigned site is skipped, including new ones."""
        newcomer = make_assignee("c", "C")
        result = allocate(self.template, [newcomer], [self.site1], self.existing)
        self.assertEqual(result.created, [])
        self.assertEqual(result.skipped[0].assignee_id, "c")

    def test_instances_copy_template_fields(self):
        result = allocate(self.template, [self.a], [self.site2], {}, created_by="admin-7")
        task = result.created[0]

        self.assertEqual(task.title, "Fire Drill")
        self.assertEqual(task.status, "pending")
        self.assertEqual(task.hourly_updates, [])
        self.assertEqual(task.attachments, self.template.attachments)
        self.assertEqual(task.assigned_to_name, "A")
        self.assertEqual((task.site_name, task.client_name), ("Site 2", "Skyline"))
        self.assertEqual(task.created_by, "admin-7")
        self.assertEqual(task.deadline, DEADLINE)

    def test_is_idempotent(self):
        first = allocate(self.template, [self.a, self.b], [self.site1, self.site2], self.existing)
        second = allocate(self.template, [self.a, self.b], [self.site1, self.site2], self.existing)
        self.assertEqual(first, second)

    def test_all_duplicates_warning(self):
        result = allocate(self.template, [self.a, self.b], [self.site1], self.existing)
        self.assertEqual(result.created, [])
        self.assertEqual(
            result.warning,
            "All selected sites already have this task assigned. 2 combination(s) skipped.",
        )

    def test_nothing_selected_warning(self):
        result = allocate(self.template, [], [self.site1], self.existing)
        self.assertEqual(result.warning, "No new tasks to create.")
        self.assertEqual(result.skipped, [])

    def test_capacity_guard_skips_distinctly(self):
        """A site with one manager slot takes only the first manager of the batch."""
        tight = make_site("tight", "Tight Site", managers=1, supervisors=0)
        m1 = make_assignee("m1", "M1", "manager")
        m2 = make_assignee("m2", "M2", "manager")
        result = allocate(self.template, [m1, m2, self.a], [tight], {})

        self.assertEqual([t.assigned_to for t in result.created], ["m1"])
        self.assertEqual([(p.assignee_id, p.reason) for p in result.capacity_skips],
                         [("m2", "capacity"), ("a", "capacity")])
        self.assertEqual(result.duplicate_skips, [])

    def test_existing_assignment_map_ignores_placeholders(self):
        tasks = [
            make_placeholder("t0"),
            make_task("t1", site_id="site1"),
            make_task("t2", site_id="site3", deadline=DEADLINE + timedelta(days=1)),
            make_task("t3", title="Other", site_id="site2"),
        ]
        existing = build_existing_assignment_map(tasks)

        key = template_identity_key("Fire Drill", "desc", "safety", "high")
        self.assertEqual(existing[key], frozenset({"site1", "site3"}))
        self.assertEqual(existing[template_identity_key("Other", "desc", "safety", "high")],
                         frozenset({"site2"}))
        self.assertNotIn("unspecified", existing[key])


class GroupingTest(SimpleTestCase):
    """Test aggregation of task instances for display."""

    def setUp(self):
        self.alice = make_task("t1", assigned_to="alice", assigned_to_name="Alice", status="completed",
                               attachments=[make_attachment("x1")])
        self.bob = make_task("t2", assigned_to="bob", assigned_to_name="Bob", status="in-progress",
                             attachments=[make_attachment("x1")])
        self.carol = make_task("t3", assigned_to="carol", assigned_to_name="Carol", status="pending",
                               hourly_updates=[HourlyUpdateSchema(id="u1", timestamp=CREATED,
                                                                  content="On site", submitted_by="carol")])

    def test_mixed_statuses_group_in_progress(self):
        [view] = group_tasks([self.alice, self.bob, self.carol])

        self.assertIsInstance(view, GroupedTaskView)
        self.assertEqual(view.overall_status, "in-progress")
        self.assertEqual(view.group_count, 3)
        self.assertEqual(view.assignee_names, ["Alice", "Bob", "Carol"])
        self.assertEqual(view.assignee_ids, ["alice", "bob", "carol"])
        self.assertEqual(view.site_names, ["Tower A"])
        self.assertEqual(view.client_names, ["Skyline"])

    def test_group_items_are_the_original_instances(self):
        members = [self.alice, self.bob, self.carol]
        [view] = group_tasks(members)

        items = ungroup(view)
        self.assertEqual(items, members)
        for item, original in zip(items, members):
            self.assertIs(item, original)

    def test_merged_attachments_and_updates_are_not_deduplicated(self):
        [view] = group_tasks([self.alice, self.bob, self.carol])
        self.assertEqual([a.id for a in view.all_attachments], ["x1", "x1"])
        self.assertEqual(view.total_attachments, 2)
        self.assertEqual(view.total_hourly_updates, 1)

    def test_synthetic_id_is_not_a_real_id(self):
        [view] = group_tasks([self.alice, self.bob])
        self.assertTrue(view.id.startswith("group-"))
        self.assertNotIn(view.id, {"t1", "t2"})
        self.assertEqual(view.kind, "group")
        # scalar fields come from the first member
        self.assertEqual(view.title, self.alice.title)

    def test_singletons_pass_through_in_first_seen_order(self):
        other_site = make_task("t4", site_id="site2", site_name="Mall")
        later = make_task("t5", deadline=DEADLINE + timedelta(days=1))
        items = group_tasks([other_site, self.alice, later, self.bob])

        self.assertIs(items[0], other_site)
        self.assertIsInstance(items[1], GroupedTaskView)
        self.assertEqual([t.id for t in items[1].group_items], ["t1", "t2"])
        self.assertIs(items[2], later)
        self.assertEqual(ungroup(later), [later])

    def test_overall_status_rules(self):
        self.assertEqual(overall_status(["completed", "completed"]), "completed")
        self.assertEqual(overall_status(["pending", "in-progress"]), "in-progress")
        self.assertEqual(overall_status(["pending", "pending"]), "pending")
        # cancelled members satisfy neither rule
        self.assertEqual(overall_status(["completed", "cancelled"]), "pending")
        self.assertEqual(overall_status(["in-progress", "cancelled"]), "in-progress")

    def test_real_instances_drop_placeholders(self):
        placeholder = make_placeholder("t0")
        self.assertEqual(real_instances([placeholder, self.alice]), [self.alice])


class LifecycleTest(SimpleTestCase):
    def test_transitions(self):
        self.assertTrue(validate_transition("pending", "in-progress"))
        self.assertTrue(validate_transition("in-progress", "completed"))
        self.assertTrue(validate_transition("pending", "cancelled"))
        self.assertTrue(validate_transition("in-progress", "cancelled"))
        self.assertTrue(validate_transition("pending", "pending"))
        self.assertFalse(validate_transition("pending", "completed"))
        self.assertFalse(validate_transition("completed", "in-progress"))
        self.assertFalse(validate_transition("cancelled", "pending"))


@override_settings(TASKING={"MAX_BATCH_SIZE": 10, "BATCH_CREATE_TIMEOUT": 5})
class TaskAssignmentServiceTest(SimpleTestCase):
    """Test orchestration against in-memory collaborators."""

    def setUp(self):
        self.template = make_placeholder("tpl")
        self.sites = [make_site("site1", "Site 1", supervisors=5), make_site("site2", "Site 2", supervisors=5)]
        self.assignees = [make_assignee("a", "A"), make_assignee("b", "B"),
                          make_assignee("m1", "M1", "manager"), make_assignee("m2", "M2", "manager")]
        self.existing = make_task("t1", assigned_to="a", site_id="site1")
        self.store = FakeTaskStore([self.template, self.existing])
        self.service = self._service(self.store)

    def _service(self, store):
        return TaskAssignmentService(store, FakeSiteDirectory(self.sites), FakeAssigneeDirectory(self.assignees))

    def test_assign_skips_existing_site_and_submits_one_batch(self):
        summary = self.service.assign_template("tpl", ["a", "b"], ["site1", "site2"], "admin")

        self.assertEqual(len(self.store.batches), 1)
        self.assertEqual([(t.assigned_to, t.site_id) for t in self.store.batches[0]],
                         [("a", "site2"), ("b", "site2")])
        self.assertEqual(summary.created, 2)
        self.assertEqual(summary.skipped, 2)
        self.assertEqual(summary.duplicate_skipped, 2)
        self.assertIn("2 combination(s) were skipped (already assigned)", summary.message)

    def test_all_duplicates_make_no_store_call(self):
        summary = self.service.assign_template("tpl", ["a", "b"], ["site1"])

        self.assertEqual(self.store.batches, [])
        self.assertEqual(summary.created, 0)
        self.assertTrue(summary.warning.startswith("All selected sites already have this task assigned"))

    def test_second_run_after_refetch_creates_nothing(self):
        self.service.assign_template("tpl", ["a", "b"], ["site1", "site2"])
        summary = self.service.assign_template("tpl", ["a", "b"], ["site1", "site2"])
        self.assertEqual(summary.created, 0)
        self.assertEqual(len(self.store.batches), 1)

    def test_validation_errors(self):
        with self.assertRaises(ValidationError):
            self.service.assign_template("", ["a"], ["site1"])
        with self.assertRaises(ValidationError):
            self.service.assign_template("tpl", [], ["site1"])
        with self.assertRaises(ValidationError):
            self.service.assign_template("tpl", ["a"], [])
        with self.assertRaises(ValidationError):
            self.service.assign_template("t1", ["a"], ["site2"])  # not a template
        with self.assertRaises(ValidationError):
            self.service.assign_template("tpl", ["ghost"], ["site2"])
        self.assertEqual(self.store.batches, [])

    def test_capacity_exceeded_before_any_store_call(self):
        with self.assertRaises(CapacityExceeded) as ctx:
            self.service.assign_template("tpl", ["m1", "m2"], ["site1"])
        self.assertEqual(ctx.exception.reason, "Manager limit reached for all selected sites")
        self.assertEqual(self.store.batches, [])

    def test_batch_size_limit(self):
        self.assignees = [make_assignee(f"s{i}", f"S{i}") for i in range(6)]
        service = self._service(self.store)
        with self.assertRaises(ValidationError):
            service.assign_template("tpl", [f"s{i}" for i in range(6)], ["site1", "site2"])

    def test_batch_failure_propagates(self):
        store = FakeTaskStore([self.template], fail_with=BatchCreateFailure("backend down"))
        with self.assertRaises(BatchCreateFailure):
            self._service(store).assign_template("tpl", ["a"], ["site2"])
        self.assertEqual(len(store.batches), 1)

    def test_check_capacity_unknown_candidate(self):
        with self.assertRaises(ValidationError):
            self.service.check_capacity("ghost", ["site1"], [])

    def test_group_status_checks_every_transition_first(self):
        done = make_task("t9", site_id="site2", status="completed")
        self.store.tasks.append(done)
        with self.assertRaises(InvalidStatusTransition):
            self.service.update_group_status(["t1", "t9"], "in-progress")
        self.assertEqual(self.store.status_updates, [])

        self.assertEqual(self.service.update_group_status(["t1", "t1"], "in-progress"), 1)
        self.assertEqual(self.store.status_updates, [("t1", "in-progress")])

    def test_group_status_with_unknown_id_changes_nothing(self):
        with self.assertRaises(TaskNotFound):
            self.service.update_group_status(["t1", "999999"], "in-progress")
        self.assertEqual(self.store.status_updates, [])

    def test_delete_group(self):
        self.store.tasks.append(make_task("t2", site_id="site2"))
        self.assertEqual(self.service.delete_group(["t1", "t2"]), 2)
        self.assertEqual(self.store.deleted, ["t1", "t2"])

    def test_delete_group_with_unknown_id_deletes_nothing(self):
        with self.assertRaises(TaskNotFound):
            self.service.delete_group(["t1", "999999"])
        self.assertEqual(self.store.deleted, [])

    def test_message_counts_only_assignees_that_received_tasks(self):
        """The second manager is capacity-skipped at both sites and gets nothing."""
        store = FakeTaskStore([self.template])
        summary = self._service(store).assign_template("tpl", ["m1", "m2"], ["site1", "site2"])

        self.assertEqual(summary.created, 2)
        self.assertEqual(summary.capacity_skipped, 2)
        self.assertTrue(summary.message.startswith(
            "Successfully created 2 new task(s) for 1 assignee(s) across 2 site(s)!"
        ))

    def test_board_filters_and_hides_templates(self):
        tasks = [
            self.template,
            make_task("t1", assigned_to_name="Alice", site_id="site1"),
            make_task("t2", title="HVAC Filter Check", assigned_to_name="Bob", site_id="site2",
                      site_name="Harbour Mall", priority="low"),
        ]
        board = TaskBoardService.build_board(tasks)
        self.assertEqual([t.id for t in board], ["t1", "t2"])

        self.assertEqual([t.id for t in TaskBoardService.build_board(tasks, query="harbour")], ["t2"])
        self.assertEqual([t.id for t in TaskBoardService.build_board(tasks, site_id="site1")], ["t1"])
        self.assertEqual([t.id for t in TaskBoardService.build_board(tasks, priority="low")], ["t2"])
        self.assertEqual(TaskBoardService.build_board(tasks, status="completed"), [])


class OrmFixtureMixin:
    """Sites, assignees and one template stored through the ORM."""

    def setUp(self):
        self.client = Client()
        self.tower = Site.objects.create(name="Tower A", client_name="Skyline Properties")
        StaffDeployment.objects.create(site=self.tower, role="Manager", count=1)
        StaffDeployment.objects.create(site=self.tower, role="Supervisor", count=2)
        StaffDeployment.objects.create(site=self.tower, role="Housekeeping Staff", count=9)

        self.mall = Site.objects.create(name="Harbour Mall", client_name="Harbour Retail")
        StaffDeployment.objects.create(site=self.mall, role="Facility Manager", count=1)
        StaffDeployment.objects.create(site=self.mall, role="Shift Supervisor", count=2)

        self.mgr_x = Assignee.objects.create(name="MgrX", role="manager")
        self.sup_y = Assignee.objects.create(name="SupY", role="supervisor")
        self.sup_z = Assignee.objects.create(name="SupZ", role="supervisor")
        self.mgr_w = Assignee.objects.create(name="MgrW", role="manager")

        self.template = Task.objects.create(
            title="Fire Drill", description="Quarterly evacuation drill", priority="high",
            task_type="safety", deadline=DEADLINE, due_date_time=DEADLINE,
        )
        Attachment.objects.create(task=self.template, filename="plan.pdf", url="/media/plan.pdf", size=10)

    def assign(self, assignees, sites):
        return self.client.post(
            "/api/tasks/assign",
            {
                "template_id": str(self.template.id),
                "assignee_ids": [str(a.id) for a in assignees],
                "site_ids": [str(s.id) for s in sites],
                "created_by": "admin",
            },
            content_type="application/json",
        )


class OrmStoreTest(OrmFixtureMixin, TestCase):
    """Test the Django ORM collaborators."""

    def test_site_capacity_derived_from_staff_deployment(self):
        sites = {s.name: s for s in OrmSiteDirectory().get_all_sites()}
        self.assertEqual((sites["Tower A"].manager_count, sites["Tower A"].supervisor_count), (1, 2))
        self.assertEqual((sites["Harbour Mall"].manager_count, sites["Harbour Mall"].supervisor_count), (1, 2))

    def test_template_is_normalised_as_placeholder(self):
        [template] = OrmTaskStore().get_all_tasks()
        self.assertTrue(template.is_placeholder)
        self.assertEqual(template.site_name, "Unspecified Site")
        self.assertEqual(len(template.attachments), 1)

    def test_assignee_directory(self):
        names = [a.name for a in OrmAssigneeDirectory().get_all_assignees()]
        self.assertEqual(names, ["MgrW", "MgrX", "SupY", "SupZ"])

    def test_batch_timeout_rolls_back(self):
        store = OrmTaskStore()
        template = store.get_task(str(self.template.id))
        [item] = allocate(
            template.as_template(),
            [AssigneeSchema(id=str(self.sup_y.id), name="SupY", role="supervisor")],
            [SiteSchema(id=str(self.tower.id), name="Tower A", client_name="Skyline Properties",
                        supervisor_count=2)],
            {},
        ).created

        with self.assertRaises(BatchCreateFailure):
            store.create_multiple_tasks([item], created_by="admin", timeout=1e-9)
        self.assertEqual(Task.objects.count(), 1)

    def test_batch_with_malformed_assignee_fails_whole_batch(self):
        store = OrmTaskStore()
        template = store.get_task(str(self.template.id))
        good, bad = allocate(
            template.as_template(),
            [AssigneeSchema(id=str(self.sup_y.id), name="SupY", role="supervisor"),
             AssigneeSchema(id="ghost", name="Ghost", role="supervisor")],
            [SiteSchema(id=str(self.tower.id), name="Tower A", client_name="Skyline Properties",
                        supervisor_count=2)],
            {},
        ).created

        with self.assertRaises(BatchCreateFailure):
            store.create_multiple_tasks([good, bad], created_by="admin")
        self.assertEqual(Task.objects.count(), 1)

    def test_batch_with_malformed_attachment_id_fails_whole_batch(self):
        [item] = allocate(
            make_template(attachments=[make_attachment("not-a-number")]),
            [AssigneeSchema(id=str(self.sup_y.id), name="SupY", role="supervisor")],
            [SiteSchema(id=str(self.tower.id), name="Tower A", client_name="Skyline Properties",
                        supervisor_count=2)],
            {},
        ).created

        with self.assertRaises(BatchCreateFailure):
            OrmTaskStore().create_multiple_tasks([item], created_by="admin")
        self.assertEqual(Task.objects.count(), 1)

    def test_group_status_update_is_all_or_nothing(self):
        self.assign([self.sup_y], [self.tower])
        task = Task.objects.exclude(site=None).get()

        with self.assertRaises(TaskNotFound):
            OrmTaskStore().update_tasks_status([str(task.id), "999999"], "in-progress")
        task.refresh_from_db()
        self.assertEqual(task.status, "pending")

        with self.assertRaises(TaskNotFound):
            OrmTaskStore().delete_tasks([str(task.id), "999999"])
        self.assertTrue(Task.objects.filter(pk=task.id).exists())


class TaskApiTest(OrmFixtureMixin, TestCase):
    """Test the HTTP surface end to end."""

    def test_create_and_list_templates(self):
        response = self.client.post(
            "/api/tasks",
            {"title": "HVAC Filter Check", "description": "Replace filters", "priority": "medium",
             "task_type": "maintenance", "deadline": "2026-11-20T17:00:00Z",
             "due_date_time": "2026-11-20T12:00:00Z"},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["site_id"], "unspecified")

        templates = self.client.get("/api/tasks/templates").json()
        self.assertEqual({t["title"] for t in templates}, {"Fire Drill", "HVAC Filter Check"})
        self.assertEqual(self.client.get("/api/tasks").json(), [])

    def test_group_actions_with_unknown_id_change_nothing(self):
        self.assign([self.sup_y], [self.tower])
        task = Task.objects.exclude(site=None).get()
        ids = [str(task.id), "999999"]

        response = self.client.post("/api/tasks/group/status", {"task_ids": ids, "status": "in-progress"},
                                    content_type="application/json")
        self.assertEqual(response.status_code, 404)
        task.refresh_from_db()
        self.assertEqual(task.status, "pending")

        response = self.client.post("/api/tasks/group/delete", {"task_ids": ids},
                                    content_type="application/json")
        self.assertEqual(response.status_code, 404)
        self.assertTrue(Task.objects.filter(pk=task.id).exists())

    def test_capacity_check_endpoint(self):
        response = self.client.post(
            "/api/capacity/check",
            {"candidate_id": str(self.mgr_w.id), "site_ids": [str(self.tower.id)],
             "assignee_ids": [str(self.mgr_x.id), str(self.sup_y.id), str(self.sup_z.id)]},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            "can_select": False,
            "reason": "Manager limit reached for all selected sites",
        })

        report = self.client.post(
            "/api/capacity/sites",
            {"site_ids": [str(self.tower.id)], "assignee_ids": [str(self.mgr_x.id)]},
            content_type="application/json",
        ).json()
        self.assertEqual(report[0]["managers_remaining"], 0)
        self.assertEqual(report[0]["supervisors_remaining"], 2)

    def test_assign_creates_tasks_and_copies_attachments(self):
        response = self.assign([self.sup_y, self.sup_z], [self.tower, self.mall])

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["created"], 4)
        self.assertEqual(data["skipped"], 0)
        self.assertEqual(Task.objects.exclude(site=None).count(), 4)
        self.assertEqual(Attachment.objects.count(), 5)
        for task in data["tasks"]:
            self.assertEqual(task["status"], "pending")
            self.assertEqual(task["created_by"], "admin")
            self.assertEqual(task["attachments"][0]["filename"], "plan.pdf")

    def test_reassigning_same_sites_is_skipped(self):
        self.assign([self.sup_y], [self.tower])
        response = self.assign([self.sup_z], [self.tower, self.mall])

        data = response.json()
        self.assertEqual(data["created"], 1)
        self.assertEqual(data["duplicate_skipped"], 1)
        self.assertEqual(data["skipped_pairs"][0]["site_id"], str(self.tower.id))

        response = self.assign([self.sup_y, self.sup_z], [self.tower, self.mall])
        data = response.json()
        self.assertEqual(data["created"], 0)
        self.assertIn("already have this task assigned", data["warning"])

    def test_capacity_violation_is_rejected(self):
        response = self.assign([self.mgr_x, self.mgr_w], [self.tower])
        self.assertEqual(response.status_code, 409)
        self.assertIn("Manager limit reached", response.json()["message"])
        self.assertEqual(Task.objects.count(), 1)

    def test_missing_selection_is_rejected(self):
        response = self.assign([], [self.tower])
        self.assertEqual(response.status_code, 400)

    def test_board_groups_instances_at_same_site(self):
        self.assign([self.sup_y, self.sup_z], [self.tower, self.mall])

        board = self.client.get("/api/tasks").json()
        self.assertEqual(len(board), 2)
        for item in board:
            self.assertEqual(item["kind"], "group")
            self.assertEqual(item["group_count"], 2)
            self.assertEqual(sorted(item["assignee_names"]), ["SupY", "SupZ"])
            self.assertEqual(item["overall_status"], "pending")
            self.assertEqual(item["total_attachments"], 2)

        filtered = self.client.get("/api/tasks", {"site_id": str(self.mall.id)}).json()
        self.assertEqual(len(filtered), 1)
        self.assertEqual(filtered[0]["site_names"], ["Harbour Mall"])

    def test_status_updates_follow_lifecycle(self):
        self.assign([self.sup_y], [self.tower])
        task = Task.objects.exclude(site=None).get()
        url = f"/api/tasks/{task.id}/status"

        response = self.client.patch(url, {"status": "in-progress"}, content_type="application/json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "in-progress")

        response = self.client.patch(url, {"status": "completed"}, content_type="application/json")
        self.assertEqual(response.json()["status"], "completed")

        response = self.client.patch(url, {"status": "pending"}, content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_group_actions(self):
        self.assign([self.sup_y, self.sup_z], [self.tower])
        ids = [str(pk) for pk in Task.objects.exclude(site=None).values_list("id", flat=True)]

        response = self.client.post("/api/tasks/group/status", {"task_ids": ids, "status": "in-progress"},
                                    content_type="application/json")
        self.assertEqual(response.json()["updated"], 2)
        [view] = self.client.get("/api/tasks").json()
        self.assertEqual(view["overall_status"], "in-progress")

        response = self.client.post("/api/tasks/group/delete", {"task_ids": ids},
                                    content_type="application/json")
        self.assertEqual(response.json()["updated"], 2)
        self.assertEqual(self.client.get("/api/tasks").json(), [])

    def test_hourly_updates_are_appended(self):
        self.assign([self.sup_y], [self.tower])
        task = Task.objects.exclude(site=None).get()
        url = f"/api/tasks/{task.id}/hourly-updates"

        self.client.post(url, {"content": "Drill started", "submitted_by": "supy"},
                         content_type="application/json")
        response = self.client.post(url, {"content": "Floors 1-4 clear", "submitted_by": "supy"},
                                    content_type="application/json")

        self.assertEqual(response.status_code, 200)
        contents = [u["content"] for u in response.json()["hourly_updates"]]
        self.assertEqual(contents, ["Drill started", "Floors 1-4 clear"])
        self.assertEqual(HourlyUpdate.objects.count(), 2)

        response = self.client.post(url, {"content": "   ", "submitted_by": "supy"},
                                    content_type="application/json")
        self.assertEqual(response.status_code, 400)

    def test_unknown_task(self):
        self.assertEqual(self.client.delete("/api/tasks/424242").status_code, 404)
        self.assertEqual(self.client.delete("/api/tasks/not-a-number").status_code, 404)

    def test_delete_task(self):
        response = self.client.delete(f"/api/tasks/{self.template.id}")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(Task.objects.exists())


class AttachmentApiTest(OrmFixtureMixin, TestCase):
    """Test attachment upload and removal through default storage."""

    def setUp(self):
        super().setUp()
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)

    def test_upload_and_delete(self):
        with override_settings(MEDIA_ROOT=self.media_root):
            upload = SimpleUploadedFile("checklist.txt", b"exits, extinguishers", content_type="text/plain")
            response = self.client.post(f"/api/tasks/{self.template.id}/attachments", {"file": upload})

            self.assertEqual(response.status_code, 201)
            data = response.json()
            self.assertEqual(data["filename"], "checklist.txt")
            self.assertEqual(data["size"], 20)

            attachment = Attachment.objects.get(pk=data["id"])
            self.assertTrue(attachment.storage_name)

            response = self.client.delete(f"/api/tasks/{self.template.id}/attachments/{data['id']}")
            self.assertEqual(response.status_code, 200)
            self.assertFalse(Attachment.objects.filter(pk=data["id"]).exists())

            response = self.client.delete(f"/api/tasks/{self.template.id}/attachments/{data['id']}")
            self.assertEqual(response.status_code, 404)
