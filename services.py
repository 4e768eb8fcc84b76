"""
Project store for the volunteer roster.

Local state is authoritative: every mutation lands in memory first and is then
mirrored to the remote "projects" collection through the WriteQueue. Failed
writes stay queued and are retried by the background flush job, so a flaky
backend never blocks or rolls back what the user sees.
"""
import copy
import threading
import time
from datetime import datetime, timezone

from flask import current_app


# ==========================
# ERRORS
# ==========================

class RosterError(Exception):
    """Base class for roster errors."""


class ValidationError(RosterError):
    """Bad user input. The operation is aborted with no state change."""


class PersistenceError(RosterError):
    """The remote store is unreachable or rejected a call."""


class NotFoundError(RosterError):
    """The referenced project does not exist."""


def utcnow():
    """Naive UTC timestamp, matching what the database hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def validate_project_fields(name, start_time, end_time):
    if not name or not str(name).strip():
        raise ValidationError("Project name cannot be empty")
    for label, hour in (("Start time", start_time), ("End time", end_time)):
        if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour < 24:
            raise ValidationError(f"{label} must be an hour between 00:00 and 23:00")
    if start_time >= end_time:
        raise ValidationError("End time must be after start time")


# ==========================
# MODELS
# ==========================

class Project:
    """
    A scheduled event: name, hour window, role list and volunteer grid.

    volunteer_data is kept in stored-document form
    ({"HH:00": {role: name-or-False}}); it is None when the document never
    carried the field.
    """

    # attribute -> document field
    FIELDS = {
        "name": "name",
        "start_time": "startTime",
        "end_time": "endTime",
        "roles": "roles",
        "volunteer_data": "volunteerData",
    }

    def __init__(self, id, name, start_time, end_time, roles=None,
                 volunteer_data=None, created_at=None, updated_at=None):
        self.id = id
        self.name = name
        self.start_time = start_time
        self.end_time = end_time
        self.roles = list(roles or [])
        self.volunteer_data = volunteer_data
        self.created_at = created_at or utcnow()
        self.updated_at = updated_at or self.created_at

    def __repr__(self):
        return f"<Project {self.id} {self.name!r} {self.start_time:02d}:00-{self.end_time:02d}:00>"

    @classmethod
    def from_document(cls, doc_id, data, created_at=None, updated_at=None):
        """Build a Project from a stored document. Missing timestamps read as now."""
        data = copy.deepcopy(data or {})
        return cls(
            id=doc_id,
            name=data.get("name", ""),
            start_time=int(data.get("startTime", 0)),
            end_time=int(data.get("endTime", 0)),
            roles=data.get("roles") or [],
            volunteer_data=data.get("volunteerData"),
            created_at=created_at,
            updated_at=updated_at,
        )

    def to_document(self, include_meta=False):
        document = {
            field: copy.deepcopy(getattr(self, attr))
            for attr, field in self.FIELDS.items()
        }
        if include_meta:
            document["id"] = self.id
            document["createdAt"] = self.created_at.isoformat()
            document["updatedAt"] = self.updated_at.isoformat()
        return document

    @classmethod
    def document_fields(cls, fields):
        """Translate attribute names to document field names."""
        unknown = set(fields) - set(cls.FIELDS)
        if unknown:
            raise ValueError(f"Unknown project field(s): {', '.join(sorted(unknown))}")
        return {cls.FIELDS[attr]: copy.deepcopy(value) for attr, value in fields.items()}

    def merge(self, fields):
        self.document_fields(fields)
        for attr, value in fields.items():
            setattr(self, attr, copy.deepcopy(value))
        self.updated_at = utcnow()


class SessionContext:
    """
    Per-request state handed to roster components explicitly: who is acting,
    and which store they act on.
    """

    def __init__(self, store, user=None):
        self.store = store
        self.user = user

    @property
    def actor(self):
        return self.user or "anonymous"


# ==========================
# OUTBOUND WRITES
# ==========================

class PendingWrite:
    def __init__(self, project_id, fields):
        self.project_id = project_id
        self.fields = dict(fields)
        self.attempts = 0
        self.version = 0


class WriteQueue:
    """
    Outbound partial updates to the remote collection, coalesced per project.

    Every submit is delivered right away; on failure the merged fields stay
    queued until flush() gets them through or the retry limit is reached.
    """

    def __init__(self, collection, retry_limit=5, local_prefix="local_"):
        self.collection = collection
        self.retry_limit = retry_limit
        self.local_prefix = local_prefix
        self._pending = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._pending)

    def has_pending(self, project_id):
        return project_id in self._pending

    def discard(self, project_id):
        with self._lock:
            self._pending.pop(project_id, None)

    def clear(self):
        with self._lock:
            self._pending.clear()

    def submit(self, project_id, fields, strict=False):
        """
        Queue fields for project_id and try to deliver them now.

        Returns True when the write reached the store (or never needed to,
        for local-only ids). With strict=True a failed delivery raises.
        """
        if str(project_id).startswith(self.local_prefix):
            return True
        with self._lock:
            write = self._pending.get(project_id)
            if write is None:
                write = self._pending[project_id] = PendingWrite(project_id, fields)
            else:
                # Later values win
                write.fields.update(fields)
                write.attempts = 0
                write.version += 1
        return self._deliver(write, strict=strict)

    def flush(self):
        """Retry every pending write. Returns the number delivered."""
        with self._lock:
            writes = list(self._pending.values())
        return sum(1 for write in writes if self._deliver(write))

    def _deliver(self, write, strict=False):
        with self._lock:
            fields = dict(write.fields)
            version = write.version
            write.attempts += 1
            attempts = write.attempts
        try:
            self.collection.update(write.project_id, fields)
        except NotFoundError as e:
            self._drop(write)
            current_app.logger.error(f"Dropping write for missing project {write.project_id}: {e}")
            if strict:
                raise
            return False
        except PersistenceError as e:
            if attempts >= self.retry_limit:
                self._drop(write)
                current_app.logger.error(
                    f"Dropping write for project {write.project_id} after {attempts} attempts: {e}"
                )
            else:
                current_app.logger.warning(
                    f"Write for project {write.project_id} failed "
                    f"(attempt {attempts}/{self.retry_limit}), will retry: {e}"
                )
            if strict:
                raise
            return False

        with self._lock:
            # Fields merged in while we were delivering still need to go out
            if write.version == version and self._pending.get(write.project_id) is write:
                del self._pending[write.project_id]
        return True

    def _drop(self, write):
        with self._lock:
            if self._pending.get(write.project_id) is write:
                del self._pending[write.project_id]


# ==========================
# PROJECT STORE
# ==========================

class ProjectStore:
    """
    Create/list/get/update/delete for projects.

    Mutations favor optimistic local success: persistence failures are
    logged and the local result is returned as if the call had worked.
    """

    def __init__(self, collection, write_queue, local_prefix="local_"):
        self.collection = collection
        self.write_queue = write_queue
        self.local_prefix = local_prefix
        self._projects = {}

    def is_local_id(self, project_id):
        return str(project_id).startswith(self.local_prefix)

    def clear_local_state(self):
        self._projects.clear()
        self.write_queue.clear()

    def _mint_local_id(self):
        stamp = int(time.time() * 1000)
        while f"{self.local_prefix}{stamp}" in self._projects:
            stamp += 1
        return f"{self.local_prefix}{stamp}"

    def create_project(self, name, start_time, end_time):
        validate_project_fields(name, start_time, end_time)
        project = Project(
            id=None,
            name=name.strip(),
            start_time=start_time,
            end_time=end_time,
            roles=[],
            volunteer_data={},
        )
        try:
            project.id = self.collection.add(project.to_document())
        except PersistenceError as e:
            # Keep the app usable; the project lives locally only
            project.id = self._mint_local_id()
            current_app.logger.error(f"Error creating project, using local id {project.id}: {e}")
        self._projects[project.id] = project
        return project

    def list_projects(self, strict=False):
        """All projects, newest first. [] when the store is unreachable unless strict."""
        try:
            documents = self.collection.stream()
        except PersistenceError as e:
            current_app.logger.error(f"Error getting projects: {e}")
            if strict:
                raise
            return []

        projects = {}
        for document in documents:
            doc_id = document["id"]
            cached = self._projects.get(doc_id)
            if cached is not None and self.write_queue.has_pending(doc_id):
                projects[doc_id] = cached
            else:
                projects[doc_id] = Project.from_document(
                    doc_id,
                    document["data"],
                    document.get("created_at"),
                    document.get("updated_at"),
                )
        for project_id, project in self._projects.items():
            if self.is_local_id(project_id):
                projects[project_id] = project
        self._projects = projects

        return sorted(projects.values(), key=lambda p: p.created_at, reverse=True)

    def get_project(self, project_id):
        """Direct lookup. Raises NotFoundError when the project does not exist."""
        cached = self._projects.get(project_id)
        if self.is_local_id(project_id) or (cached is not None and self.write_queue.has_pending(project_id)):
            if cached is None:
                raise NotFoundError(f"Project not found: {project_id}")
            return cached

        try:
            document = self.collection.get(project_id)
        except PersistenceError as e:
            if cached is None:
                current_app.logger.error(f"Error getting project {project_id}: {e}")
                raise
            current_app.logger.warning(f"Serving local copy of project {project_id}: {e}")
            return cached

        if document is None:
            self._projects.pop(project_id, None)
            raise NotFoundError(f"Project not found: {project_id}")

        project = Project.from_document(
            project_id,
            document["data"],
            document.get("created_at"),
            document.get("updated_at"),
        )
        self._projects[project_id] = project
        return project

    def update_project(self, project_id, **fields):
        """
        Merge fields into the project and queue the remote write.
        Returns the merged project, or None when the id is unknown.
        """
        document_fields = Project.document_fields(fields)
        project = self._projects.get(project_id)
        if project is None:
            try:
                project = self.get_project(project_id)
            except (NotFoundError, PersistenceError) as e:
                current_app.logger.error(f"Error updating project {project_id}: {e}")
                return None

        project.merge(fields)
        self.write_queue.submit(project_id, document_fields)
        return project

    def delete_project(self, project_id):
        """Always reports success; remote failures are only logged."""
        self._projects.pop(project_id, None)
        self.write_queue.discard(project_id)
        if self.is_local_id(project_id):
            return True
        try:
            self.collection.delete(project_id)
        except PersistenceError as e:
            current_app.logger.error(f"Error deleting project {project_id}: {e}")
        return True

    # Volunteer data

    def update_volunteer_data(self, project_id, volunteer_data):
        """Fire-and-forget grid persist."""
        self.update_project(project_id, volunteer_data=volunteer_data)
        return True

    def save_volunteer_data(self, project_id, volunteer_data):
        """Explicit grid persist. Raises PersistenceError when the store refuses it."""
        project = self._projects.get(project_id)
        if project is not None:
            project.merge({"volunteer_data": volunteer_data})
        try:
            self.write_queue.submit(
                project_id,
                {"volunteerData": copy.deepcopy(volunteer_data)},
                strict=True,
            )
        except NotFoundError as e:
            raise PersistenceError(f"Project {project_id} no longer exists") from e
        return True

    def get_volunteer_data(self, project_id):
        try:
            project = self.get_project(project_id)
        except RosterError as e:
            current_app.logger.error(f"Error getting volunteer data for {project_id}: {e}")
            return {}
        return copy.deepcopy(project.volunteer_data or {})
