from datetime import timedelta
from functools import wraps
import os
import threading
import time
import uuid

from flask import (
    Flask, render_template, redirect, url_for,
    request, flash, session, jsonify, g
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.dialects import mysql
from sqlalchemy.exc import SQLAlchemyError
from flask_wtf import FlaskForm
from wtforms import StringField, SelectField, HiddenField, SubmitField
from wtforms.validators import DataRequired, Length
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

# Load environment variables from .env file BEFORE importing Config so it can read envs
load_dotenv()

from config import Config
from services import (
    ProjectStore, WriteQueue, SessionContext,
    ValidationError, PersistenceError, NotFoundError, utcnow
)
from roster import RosterSynchronizer

app = Flask(__name__)
app.config.from_object(Config)
db = SQLAlchemy(app)


# Performance monitoring
@app.before_request
def before_request():
    g.start_time = time.time()

@app.after_request
def after_request(response):
    if hasattr(g, 'start_time'):
        response_time = time.time() - g.start_time
        response.headers['X-Response-Time'] = f"{response_time:.3f}s"

    # Security headers
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    return response


# ==========================
# MODELS
# ==========================

# MySQL DATETIME drops fractional seconds unless fsp is given
Timestamp = db.DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


class ProjectDocument(db.Model):
    """
    One document in the "projects" collection.
    `data` holds the project body (name, startTime, endTime, roles,
    volunteerData); timestamps are stamped by ProjectCollection with
    microsecond precision.
    """
    __tablename__ = "projects"

    id = db.Column(db.String(64), primary_key=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(Timestamp, default=utcnow, index=True)  # Index for newest-first listing
    updated_at = db.Column(Timestamp, default=utcnow)


class ProjectCollection:
    """
    Document-style access to the projects table: add with a generated id,
    list, get, partial merge update, delete. SQLAlchemy failures surface as
    PersistenceError.
    """

    def __init__(self):
        self._last_stamp = None
        self._stamp_lock = threading.Lock()

    def next_stamp(self):
        """Strictly increasing timestamp, so back-to-back inserts never tie on created_at."""
        with self._stamp_lock:
            stamp = utcnow()
            if self._last_stamp is not None and stamp <= self._last_stamp:
                stamp = self._last_stamp + timedelta(microseconds=1)
            self._last_stamp = stamp
            return stamp

    def add(self, fields):
        doc_id = uuid.uuid4().hex[:20]
        stamp = self.next_stamp()
        try:
            db.session.add(ProjectDocument(
                id=doc_id, data=dict(fields), created_at=stamp, updated_at=stamp
            ))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(str(e)) from e
        return doc_id

    def stream(self):
        try:
            documents = ProjectDocument.query.order_by(ProjectDocument.created_at.desc()).all()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(str(e)) from e
        return [self._snapshot(d) for d in documents]

    def get(self, doc_id):
        try:
            document = db.session.get(ProjectDocument, doc_id)
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(str(e)) from e
        return self._snapshot(document) if document else None

    def update(self, doc_id, fields):
        try:
            document = db.session.get(ProjectDocument, doc_id)
            if document is None:
                raise NotFoundError(f"No project document {doc_id}")
            document.data = {**(document.data or {}), **fields}
            document.updated_at = self.next_stamp()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(str(e)) from e

    def delete(self, doc_id):
        try:
            ProjectDocument.query.filter_by(id=doc_id).delete()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise PersistenceError(str(e)) from e

    @staticmethod
    def _snapshot(document):
        return {
            "id": document.id,
            "data": dict(document.data or {}),
            "created_at": document.created_at,
            "updated_at": document.updated_at,
        }


project_collection = ProjectCollection()
write_queue = WriteQueue(
    project_collection,
    retry_limit=app.config["WRITE_RETRY_LIMIT"],
    local_prefix=app.config["LOCAL_ID_PREFIX"],
)
project_store = ProjectStore(
    project_collection,
    write_queue,
    local_prefix=app.config["LOCAL_ID_PREFIX"],
)


# ==========================
# BACKGROUND JOBS
# ==========================

def flush_pending_writes():
    """Retry queued remote writes. Runs on the scheduler thread."""
    with app.app_context():
        if not write_queue:
            return 0
        delivered = write_queue.flush()
        if delivered:
            app.logger.info(f"Flushed {delivered} pending write(s); {len(write_queue)} still queued")
        return delivered


# The queue lives in this process, so the flush job runs alongside the web app
if not app.config["TESTING"] and app.config["WRITE_QUEUE_FLUSH_SECONDS"] > 0:
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        flush_pending_writes,
        IntervalTrigger(seconds=app.config["WRITE_QUEUE_FLUSH_SECONDS"]),
        id='flush-pending-writes',
        replace_existing=True
    )
    scheduler.start()
else:
    scheduler = None


# ==========================
# FORMS
# ==========================

HOUR_CHOICES = [(hour, f"{hour:02d}:00") for hour in range(24)]


class ProjectForm(FlaskForm):
    name = StringField(
        "Project Name",
        validators=[DataRequired(message="Project name cannot be empty"), Length(max=120)]
    )
    start_time = SelectField("Start Time", choices=HOUR_CHOICES, coerce=int)
    end_time = SelectField("End Time", choices=HOUR_CHOICES, coerce=int)
    submit = SubmitField("Create Project")


class RoleForm(FlaskForm):
    role_name = StringField(
        "Add New Role",
        validators=[DataRequired(message="Role name cannot be empty"), Length(max=80)]
    )
    submit = SubmitField("Add")


class SlotForm(FlaskForm):
    slot = HiddenField("Time Slot", validators=[DataRequired()])
    role = HiddenField("Role", validators=[DataRequired()])


class SignupForm(SlotForm):
    volunteer_name = StringField(
        "Your Name",
        validators=[DataRequired(message="Please enter your name"), Length(max=80)]
    )
    submit = SubmitField("Sign Up")


class ActionForm(FlaskForm):
    """CSRF-only form for delete/save buttons."""


# ==========================
# HELPERS
# ==========================

def get_session_context():
    """Build the explicit per-request context handed to roster components."""
    return SessionContext(store=project_store, user=session.get("user_name"))


def flash_form_errors(form):
    for errors in form.errors.values():
        for error in errors:
            flash(error, "danger")


def with_roster(view_func):
    """Load the project named in the URL and hand its initialized roster to the view."""
    @wraps(view_func)
    def wrapper(project_id, *args, **kwargs):
        try:
            project = project_store.get_project(project_id)
        except NotFoundError:
            flash("Project not found.", "danger")
            return redirect(url_for("index"))
        except PersistenceError as e:
            app.logger.error(f"Error loading project {project_id}: {e}")
            flash("Failed to load volunteer data", "danger")
            return redirect(url_for("index"))

        roster = RosterSynchronizer(get_session_context(), project)
        roster.initialize_grid()
        return view_func(roster, *args, **kwargs)
    return wrapper


@app.context_processor
def inject_globals():
    return {"current_user": session.get("user_name")}


# ==========================
# ROUTES
# ==========================

@app.route("/")
def index():
    """Project management plus the roster grid for the selected project."""
    project_form = ProjectForm(
        start_time=app.config["DEFAULT_START_HOUR"],
        end_time=app.config["DEFAULT_END_HOUR"],
    )
    try:
        projects = project_store.list_projects(strict=True)
    except PersistenceError:
        return render_template(
            "index.html",
            error="Failed to load projects. Please try refreshing the page.",
            projects=[],
            selected=None,
            roster=None,
            project_form=project_form,
            role_form=RoleForm(),
            action_form=ActionForm(),
        )

    selected_id = request.args.get("project")
    selected = next((p for p in projects if p.id == selected_id), None)
    if selected is None and not selected_id and projects:
        selected = projects[0]

    roster = None
    if selected is not None:
        roster = RosterSynchronizer(get_session_context(), selected)
        roster.initialize_grid()

    return render_template(
        "index.html",
        error=None,
        projects=projects,
        selected=selected,
        roster=roster,
        project_form=project_form,
        role_form=RoleForm(),
        action_form=ActionForm(),
    )


@app.route("/projects", methods=["POST"])
def create_project():
    form = ProjectForm()
    if not form.validate_on_submit():
        flash_form_errors(form)
        return redirect(url_for("index"))

    try:
        project = project_store.create_project(
            form.name.data, form.start_time.data, form.end_time.data
        )
    except ValidationError as e:
        flash(str(e), "danger")
        return redirect(url_for("index"))

    app.logger.info(f"Project {project.id} ({project.name}) created")
    flash(f'Project "{project.name}" created successfully', "success")
    return redirect(url_for("index", project=project.id))


@app.route("/projects/<project_id>/delete", methods=["POST"])
def delete_project(project_id):
    form = ActionForm()
    if form.validate_on_submit():
        project_store.delete_project(project_id)
        app.logger.info(f"Project {project_id} deleted")
        flash("Project deleted successfully", "success")
    else:
        flash_form_errors(form)
    return redirect(url_for("index"))


@app.route("/projects/<project_id>/roles", methods=["POST"])
@with_roster
def add_role(roster):
    form = RoleForm()
    if not form.validate_on_submit():
        flash_form_errors(form)
    else:
        try:
            roster.add_role(form.role_name.data)
        except ValidationError as e:
            flash(str(e), "danger")
        else:
            flash(f'Role "{form.role_name.data}" added successfully', "success")
    return redirect(url_for("index", project=roster.project.id))


@app.route("/projects/<project_id>/roles/remove", methods=["POST"])
@with_roster
def remove_role(roster):
    form = RoleForm()
    if not form.validate_on_submit():
        flash_form_errors(form)
    else:
        roster.remove_role(form.role_name.data)
        flash(f'Role "{form.role_name.data}" removed successfully', "success")
    return redirect(url_for("index", project=roster.project.id))


@app.route("/projects/<project_id>/signup", methods=["GET", "POST"])
@with_roster
def signup(roster):
    """Sign a volunteer up for one time slot / role cell."""
    form = SignupForm()

    if request.method == "GET":
        slot = request.args.get("slot", "")
        role = request.args.get("role", "")
        if slot not in roster.time_slots or role not in roster.roles:
            flash("That roster slot no longer exists.", "warning")
            return redirect(url_for("index", project=roster.project.id))
        form.slot.data = slot
        form.role.data = role
        # Pre-fill with the existing volunteer, else whoever signed up last in this session
        existing = roster.volunteer_at(slot, role)
        form.volunteer_name.data = existing.name if existing else (session.get("user_name") or "")

    elif form.validate_on_submit():
        try:
            roster.assign(form.slot.data, form.role.data, form.volunteer_name.data)
        except ValidationError as e:
            flash(str(e), "danger")
        else:
            name = form.volunteer_name.data.strip()
            session["user_name"] = name
            flash(f"{name} signed up for {form.role.data} at {form.slot.data}", "success")
            return redirect(url_for("index", project=roster.project.id))
    else:
        flash_form_errors(form)

    return render_template("signup.html", project=roster.project, form=form)


@app.route("/projects/<project_id>/clear", methods=["POST"])
@with_roster
def clear_slot(roster):
    form = SlotForm()
    if not form.validate_on_submit():
        flash_form_errors(form)
    else:
        try:
            roster.clear(form.slot.data, form.role.data)
        except ValidationError as e:
            flash(str(e), "danger")
        else:
            flash("Volunteer removed successfully", "success")
    return redirect(url_for("index", project=roster.project.id))


@app.route("/projects/<project_id>/save", methods=["POST"])
@with_roster
def save_roster(roster):
    form = ActionForm()
    if not form.validate_on_submit():
        flash_form_errors(form)
        return redirect(url_for("index", project=roster.project.id))

    try:
        roster.save_all()
    except PersistenceError:
        flash("Failed to save roster. Please try again.", "danger")
    else:
        flash(f'Roster for project "{roster.project.name}" has been saved successfully', "success")
    return redirect(url_for("index", project=roster.project.id))


# ==========================
# API
# ==========================

@app.route("/api/projects")
def api_projects():
    """Return JSON list of projects, newest first."""
    try:
        projects = project_store.list_projects(strict=True)
    except PersistenceError:
        return jsonify({"error": "persistence_unavailable"}), 503
    return jsonify({"projects": [p.to_document(include_meta=True) for p in projects]})


@app.route("/api/projects/<project_id>")
def api_project(project_id):
    try:
        project = project_store.get_project(project_id)
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except PersistenceError:
        return jsonify({"error": "persistence_unavailable"}), 503
    return jsonify(project.to_document(include_meta=True))


@app.route("/api/projects/<project_id>/roster")
def api_project_roster(project_id):
    """Return the time slots, roles and volunteer grid for one project."""
    try:
        project = project_store.get_project(project_id)
    except NotFoundError:
        return jsonify({"error": "not_found"}), 404
    except PersistenceError:
        return jsonify({"error": "persistence_unavailable"}), 503

    roster = RosterSynchronizer(get_session_context(), project)
    roster.initialize_grid()
    return jsonify({
        "id": project.id,
        "name": project.name,
        "timeSlots": roster.time_slots,
        "roles": roster.roles,
        "volunteerData": roster.to_document(),
        "pendingWrite": write_queue.has_pending(project.id),
    })


@app.route("/api/projects/<project_id>/volunteer-data")
def api_volunteer_data(project_id):
    """Return the stored volunteer grid as-is; {} when it cannot be loaded."""
    return jsonify({
        "id": project_id,
        "volunteerData": project_store.get_volunteer_data(project_id),
    })


# ==========================
# CLI
# ==========================

@app.cli.command("init-db")
def init_db_command():
    """
    Create the projects collection table.
    Run with: flask --app app.py init-db
    """
    db.create_all()
    print("Database initialized.")


@app.cli.command("list-projects")
def list_projects_command():
    """Print every project, newest first. Run with: flask --app app.py list-projects"""
    projects = project_store.list_projects()
    if not projects:
        print("No projects found.")
        return
    for p in projects:
        roles = ", ".join(p.roles) or "-"
        print(f"{p.id}  {p.name}  {p.start_time:02d}:00-{p.end_time:02d}:00  roles: {roles}")


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
    app.run(debug=os.environ.get("FLASK_DEBUG", "True").lower() == "true")
