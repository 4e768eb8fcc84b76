"""
Roster grid for a single project: hourly time slots x roles.

In memory every cell is either Assigned(name) or UNASSIGNED. The stored
document keeps the older shape where False marks an empty cell, so the grid
is converted with decode_grid / encode_grid at the store boundary.
"""
from dataclasses import dataclass

from flask import current_app

from services import PersistenceError, ValidationError


def generate_time_slots(start_hour, end_hour):
    """Return "HH:00" labels for each hour in [start_hour, end_hour)."""
    return [f"{hour:02d}:00" for hour in range(start_hour, end_hour)]


class _Unassigned:
    """An empty roster cell."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "UNASSIGNED"


UNASSIGNED = _Unassigned()


@dataclass(frozen=True)
class Assigned:
    name: str

    def __str__(self):
        return self.name


def decode_assignment(value):
    if isinstance(value, str) and value.strip():
        return Assigned(value)
    return UNASSIGNED


def encode_assignment(assignment):
    return assignment.name if isinstance(assignment, Assigned) else False


def decode_grid(volunteer_data):
    return {
        slot: {role: decode_assignment(value) for role, value in (cells or {}).items()}
        for slot, cells in (volunteer_data or {}).items()
    }


def encode_grid(grid):
    return {
        slot: {role: encode_assignment(assignment) for role, assignment in cells.items()}
        for slot, cells in grid.items()
    }


class RosterSynchronizer:
    """
    Materializes one project's grid and mirrors every edit to the store.

    Each mutation updates the local grid first and then persists it
    fire-and-forget; only save_all() lets a persistence failure reach the
    caller.
    """

    def __init__(self, context, project):
        self.context = context
        self.project = project
        self.roles = list(project.roles)
        self.time_slots = []
        self.grid = {}

    @property
    def store(self):
        return self.context.store

    def initialize_grid(self):
        self.time_slots = generate_time_slots(self.project.start_time, self.project.end_time)
        self.roles = list(self.project.roles or [])

        if self.project.volunteer_data is not None:
            # Adopt whatever is stored, stale or not
            self.grid = decode_grid(self.project.volunteer_data)
        else:
            self.grid = {
                slot: {role: UNASSIGNED for role in self.roles}
                for slot in self.time_slots
            }
            self._persist()
        return self.grid

    def add_role(self, name):
        name = name or ""
        if not name.strip():
            raise ValidationError("Role name cannot be empty")
        if name in self.roles:
            raise ValidationError("Role already exists")

        self.roles = self.roles + [name]
        self.store.update_project(self.project.id, roles=list(self.roles))

        for slot in self.time_slots:
            self.grid.setdefault(slot, {})[name] = UNASSIGNED
        self._persist()
        current_app.logger.info(f"Role {name!r} added to project {self.project.id} by {self.context.actor}")

    def remove_role(self, name):
        self.roles = [role for role in self.roles if role != name]
        self.store.update_project(self.project.id, roles=list(self.roles))

        for slot in self.time_slots:
            self.grid.get(slot, {}).pop(name, None)
        self._persist()
        current_app.logger.info(f"Role {name!r} removed from project {self.project.id} by {self.context.actor}")

    def assign(self, slot, role, volunteer_name):
        volunteer_name = (volunteer_name or "").strip()
        if not volunteer_name:
            raise ValidationError("Please enter your name")
        self._check_cell(slot, role)

        self.grid.setdefault(slot, {})[role] = Assigned(volunteer_name)
        self._persist()

    def clear(self, slot, role):
        self._check_cell(slot, role)
        self.grid.setdefault(slot, {})[role] = UNASSIGNED
        self._persist()

    def save_all(self):
        """Persist the whole grid now. Raises PersistenceError on failure."""
        try:
            self.store.save_volunteer_data(self.project.id, self.to_document())
        except PersistenceError as e:
            current_app.logger.error(f"Error saving roster for project {self.project.id}: {e}")
            raise
        current_app.logger.info(f"Roster for project {self.project.id} saved by {self.context.actor}")
        return True

    # Read helpers

    def volunteer_at(self, slot, role):
        return self.grid.get(slot, {}).get(role, UNASSIGNED)

    def rows(self):
        return [
            (slot, [(role, self.volunteer_at(slot, role)) for role in self.roles])
            for slot in self.time_slots
        ]

    def to_document(self):
        return encode_grid(self.grid)

    def _check_cell(self, slot, role):
        if slot not in self.time_slots:
            raise ValidationError(f"Unknown time slot: {slot}")
        if role not in self.roles:
            raise ValidationError(f"Unknown role: {role}")

    def _persist(self):
        self.store.update_volunteer_data(self.project.id, self.to_document())
