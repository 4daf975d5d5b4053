"""
Flask application exposing the image lifecycle to a declarative engine.

Every lifecycle call carries the full desired spec and the last persisted
state; the service itself stores nothing between requests.
"""

import logging

from flask import Flask, abort, current_app, jsonify, request

from . import __version__
from .builder import ImageBuilder
from .config import config
from .errors import ReconcileError
from .inspector import RegistryInspector
from .models import DesiredImageSpec, ReconcileContext, ResourceState
from .mutator import RegistryMutator
from .reconciler import LifecycleReconciler

logger = logging.getLogger(__name__)

# Create Flask app
app = Flask(__name__)

RECONCILER_KEY = "ecrpush.reconciler"


def get_reconciler() -> LifecycleReconciler:
    """Return the app's reconciler, wiring the default Docker/ECR one on first use."""
    reconciler = current_app.extensions.get(RECONCILER_KEY)
    if reconciler is None:
        builder = ImageBuilder()
        reconciler = LifecycleReconciler(
            inspector=RegistryInspector(),
            mutator=RegistryMutator(builder),
            builder=builder,
        )
        current_app.extensions[RECONCILER_KEY] = reconciler
    return reconciler


def _payload() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        logger.warning(f"Rejected non-JSON body on {request.path}")
        abort(400, "Request body must be a JSON object")
    return body


def _context(body: dict) -> ReconcileContext:
    """Build the per-call context from the request, falling back to configured defaults."""
    region = body.get("region") or config.AWS_REGION
    timeout = body.get("timeout", config.OPERATION_TIMEOUT)
    try:
        timeout = float(timeout) if timeout else None
    except (TypeError, ValueError):
        abort(400, "timeout must be a number of seconds")
    return ReconcileContext.create(region, timeout)


@app.errorhandler(ReconcileError)
def handle_reconcile_error(error: ReconcileError):
    """Render structured failures as JSON with the error's status code."""
    logger.error(f"{request.path} failed: {error.kind}: {error}")
    body = {"error": error.to_dict()}
    if error.state is not None:
        body["state"] = error.state.to_dict()
    return jsonify(body), error.status_code


# -------------------------------
# Lifecycle Endpoints
# -------------------------------


@app.route("/v1/")
def v1_root():
    """
    Service check endpoint.

    Returns:
        JSON {"status": "ok", "version": str, "toolchain": bool}; toolchain
        reports whether the Docker daemon currently answers.
    """
    toolchain = get_reconciler().builder.is_running()
    return jsonify({"status": "ok", "version": __version__, "toolchain": toolchain})


@app.route("/v1/images/create", methods=["POST"])
def create_image():
    """
    Build and push a new image.

    Request Body:
        {"spec": {...}, "region": str?, "timeout": number?}

    Returns:
        201 with {"state": {"id", "content_fingerprint"}}
    """
    body = _payload()
    spec = DesiredImageSpec.from_dict(body.get("spec"))
    ctx = _context(body)
    logger.info(f"Create requested: {spec.local_ref} -> '{spec.repository_name}' in {ctx.region}")
    state = get_reconciler().create(spec, ctx)
    return jsonify({"state": state.to_dict()}), 201


@app.route("/v1/images/read", methods=["POST"])
def read_image():
    """
    Refresh the identity of an image.

    Request Body:
        {"spec": {...}, "state": {...}, "region": str?}

    Returns:
        {"spec": {...}, "state": {...}, "absent": bool}; absent is true when
        the repository or tag no longer exists (state.id is then empty)
    """
    body = _payload()
    spec = DesiredImageSpec.from_dict(body.get("spec"))
    state = ResourceState.from_dict(body.get("state"))
    state = get_reconciler().read(spec, state, _context(body))
    return jsonify({"spec": spec.to_dict(), "state": state.to_dict(), "absent": not state.exists})


@app.route("/v1/images/plan", methods=["POST"])
def plan_image():
    """
    Plan-time drift check.

    Request Body:
        {"spec": {...}, "new_spec": {...}?, "state": {...}}

    Returns:
        {"plan": {"tag_change", "content_drift", "fingerprint"}}
    """
    body = _payload()
    spec = DesiredImageSpec.from_dict(body.get("spec"))
    new_spec = DesiredImageSpec.from_dict(body["new_spec"]) if body.get("new_spec") else spec
    state = ResourceState.from_dict(body.get("state"))
    plan = get_reconciler().plan(spec, state, new_spec)
    return jsonify({"plan": plan.to_dict()})


@app.route("/v1/images/update", methods=["POST"])
def update_image():
    """
    Converge an existing image on a changed spec.

    Request Body:
        {"spec": {...}, "state": {...}, "new_spec": {...}, "region": str?, "timeout": number?}

    Returns:
        {"state": {...}, "plan": {...}}
    """
    body = _payload()
    spec = DesiredImageSpec.from_dict(body.get("spec"))
    if not body.get("new_spec"):
        abort(400, "new_spec is required")
    new_spec = DesiredImageSpec.from_dict(body["new_spec"])
    state = ResourceState.from_dict(body.get("state"))
    ctx = _context(body)

    reconciler = get_reconciler()
    plan = reconciler.plan(spec, state, new_spec)
    logger.info(
        f"Update requested: '{spec.repository_name}:{spec.image_tag}' -> '{new_spec.image_tag}', "
        f"tag_change={plan.tag_change}, content_drift={plan.content_drift}"
    )
    state = reconciler.update(spec, state, new_spec, ctx, plan=plan)
    return jsonify({"state": state.to_dict(), "plan": plan.to_dict()})


@app.route("/v1/images/delete", methods=["POST"])
def delete_image():
    """
    Remove the registry tag of an image.

    Request Body:
        {"spec": {...}, "state": {...}, "region": str?}

    Returns:
        {"state": {...}} with an empty id
    """
    body = _payload()
    spec = DesiredImageSpec.from_dict(body.get("spec"))
    state = ResourceState.from_dict(body.get("state"))
    ctx = _context(body)
    logger.info(f"Delete requested: '{spec.repository_name}:{spec.image_tag}' in {ctx.region}")
    state = get_reconciler().delete(spec, state, ctx)
    return jsonify({"state": state.to_dict()})
