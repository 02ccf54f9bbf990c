import logging
from collections.abc import Mapping, Sequence
from typing import Optional, Protocol

from pulp import LpBinary, LpMaximize, LpProblem, LpVariable, PulpSolverError, lpSum  # type: ignore

from .schemas import AssigneeSchema, CapacityDecision, SiteCapacitySchema, SiteSchema

logger = logging.getLogger(__name__)

ROLES = ("manager", "supervisor")

Slots = Mapping[str, Mapping[str, int]]
Placement = list[tuple[AssigneeSchema, Optional[str]]]


class SiteChooser(Protocol):
    """Decides which selected site each selected assignee occupies."""

    def place(self, assignees: Sequence[AssigneeSchema], site_ids: Sequence[str], slots: Slots) -> Placement:
        ...


class RoundRobinSiteChooser:
    """Affinity site if it is selected, otherwise cycle through the selected sites."""

    def place(self, assignees, site_ids, slots):
        placement = []
        for index, assignee in enumerate(assignees):
            if not site_ids:
                placement.append((assignee, None))
            elif assignee.site_id and assignee.site_id in site_ids:
                placement.append((assignee, assignee.site_id))
            else:
                placement.append((assignee, site_ids[index % len(site_ids)]))
        return placement


class BalancedSiteChooser:
    """Place assignees with a 0/1 linear program via pulp.

    Maximises the number of placed assignees without exceeding any site's
    role slots, preferring each assignee's affinity site. Assignees that
    cannot be placed are paired with ``None``. If the solver fails the
    round-robin placement is used instead.
    """

    AFFINITY_BONUS = 0.5

    def place(self, assignees, site_ids, slots):
        problem = LpProblem("Site_Placement", LpMaximize)

        # x[(i, site_id)] = 1 if assignee i sits at site_id
        x = {}
        for i, assignee in enumerate(assignees):
            for j, site_id in enumerate(site_ids):
                if slots.get(site_id, {}).get(assignee.role, 0) > 0:
                    x[(i, site_id)] = LpVariable(f"x_{i}_{j}", cat=LpBinary)

        if not x:
            return [(assignee, None) for assignee in assignees]

        problem += lpSum(
            var * (1 + (self.AFFINITY_BONUS if assignees[i].site_id == site_id else 0))
            for (i, site_id), var in x.items()
        )

        for i in range(len(assignees)):
            options = [x[(i, s)] for s in site_ids if (i, s) in x]
            if options:
                problem += lpSum(options) <= 1

        for site_id in site_ids:
            for role in ROLES:
                members = [x[(i, site_id)] for i, a in enumerate(assignees)
                           if a.role == role and (i, site_id) in x]
                if members:
                    problem += lpSum(members) <= slots[site_id][role]

        try:
            problem.solve()
        except PulpSolverError as e:
            logger.warning("Site placement solver failed, using round robin: %s", e)
            return RoundRobinSiteChooser().place(assignees, site_ids, slots)

        chosen = {i: site_id for (i, site_id), var in x.items() if var.value() is not None and var.value() > 0.5}
        return [(assignee, chosen.get(i)) for i, assignee in enumerate(assignees)]


class CapacityTracker:
    """Per-site manager/supervisor slot accounting for a tentative selection.

    Slots already taken by the current selection are counted before a new
    candidate is evaluated, so each pick can change what the next pick sees.
    """

    def __init__(self, sites: Sequence[SiteSchema], assignees: Sequence[AssigneeSchema],
                 chooser: SiteChooser | None = None):
        self.sites = {site.id: site for site in sites}
        self.assignees = {assignee.id: assignee for assignee in assignees}
        self.chooser = chooser or RoundRobinSiteChooser()

    def slots(self, site_ids: Sequence[str]) -> dict[str, dict[str, int]]:
        """Role capacities of the selected sites that exist in the directory."""
        return {
            site_id: {role: self.sites[site_id].capacity_for(role) for role in ROLES}
            for site_id in site_ids if site_id in self.sites
        }

    def usage(self, site_ids: Sequence[str], assignee_ids: Sequence[str]) -> dict[str, dict[str, int]]:
        """Slots consumed per selected site by the selected assignees."""
        usage = {site_id: {role: 0 for role in ROLES} for site_id in site_ids}
        selected = [self.assignees[a_id] for a_id in assignee_ids if a_id in self.assignees]

        for assignee, site_id in self.chooser.place(selected, list(site_ids), self.slots(site_ids)):
            if site_id in usage:
                usage[site_id][assignee.role] += 1
        return usage

    def check(self, candidate: AssigneeSchema, site_ids: Sequence[str],
              assignee_ids: Sequence[str]) -> CapacityDecision:
        if candidate.id in assignee_ids:
            # Deselecting is never blocked by capacity
            return CapacityDecision(can_select=True, reason="Already selected")

        if not site_ids:
            return CapacityDecision(can_select=False, reason="Please select sites first")

        slots = self.slots(site_ids)
        usage = self.usage(site_ids, assignee_ids)
        for site_id in site_ids:
            if site_id not in slots:
                continue
            if usage[site_id][candidate.role] < slots[site_id][candidate.role]:
                return CapacityDecision(
                    can_select=True,
                    reason=f"Can be assigned to {self.sites[site_id].name}",
                )

        return CapacityDecision(
            can_select=False,
            reason=f"{candidate.role.capitalize()} limit reached for all selected sites",
        )

    def site_report(self, site_ids: Sequence[str], assignee_ids: Sequence[str]) -> list[SiteCapacitySchema]:
        slots = self.slots(site_ids)
        usage = self.usage(site_ids, assignee_ids)
        report = []
        for site_id, limits in slots.items():
            used = usage[site_id]
            report.append(SiteCapacitySchema(
                site_id=site_id,
                site_name=self.sites[site_id].name,
                manager_limit=limits["manager"],
                supervisor_limit=limits["supervisor"],
                managers_used=used["manager"],
                supervisors_used=used["supervisor"],
                managers_remaining=max(0, limits["manager"] - used["manager"]),
                supervisors_remaining=max(0, limits["supervisor"] - used["supervisor"]),
            ))
        return report


def check_capacity(candidate: AssigneeSchema, selected_site_ids: Sequence[str], selected_assignee_ids: Sequence[str],
                   sites: Sequence[SiteSchema], assignees: Sequence[AssigneeSchema],
                   chooser: SiteChooser | None = None) -> CapacityDecision:
    """Can ``candidate`` join the current selection without overfilling a site?"""
    return CapacityTracker(sites, assignees, chooser).check(candidate, selected_site_ids, selected_assignee_ids)
