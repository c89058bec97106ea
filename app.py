import atexit
import datetime
import logging
import secrets
import signal
import sys
import time
from dataclasses import dataclass, field
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, redirect, render_template, request, session, url_for
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.security import check_password_hash, generate_password_hash

import config
from bot_files import BotFileStore
from bot_process import BotProcessManager
from credentials import CredentialStore
from log_sink import LogSink
from panel_errors import PanelError, ValidationError
from panel_status import build_status
from zip_extract import extract_archive


# =============================
# Logging
# =============================
_LOG_FORMAT = "[bot-panel] %(asctime)s %(levelname)s %(message)s"
logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT)
log = logging.getLogger("bot_panel")


def _attach_file_handler(log_file: str) -> None:
    if not log_file:
        return
    target = str(Path(log_file).resolve())
    # create_app() can run more than once per process (tests)
    if any(getattr(h, "baseFilename", "") == target for h in log.handlers):
        return
    fh = logging.FileHandler(target, encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(logging.Formatter(_LOG_FORMAT))
    log.addHandler(fh)


def _iso_now() -> str:
    return datetime.datetime.now().isoformat(timespec="seconds")


# =============================
# Panel state
# =============================
@dataclass
class PanelContext:
    sink: LogSink
    files: BotFileStore
    credentials: CredentialStore
    manager: BotProcessManager
    password_hash: str
    # Sessions are client-side cookies; binding them to a per-boot nonce
    # forces a fresh login after the panel restarts.
    boot_id: str = field(default_factory=lambda: secrets.token_urlsafe(16))
    started_mono: float = field(default_factory=time.monotonic)


def build_context(cfg) -> PanelContext:
    root = Path(cfg["BOT_FILES_DIR"])
    sink = LogSink(capacity=cfg["LOG_CAPACITY"], message_limit=cfg["LOG_MESSAGE_LIMIT"])
    files = BotFileStore(root)
    files.ensure_root()
    credentials = CredentialStore(root / cfg["CREDENTIAL_FILE_NAME"], sink)
    manager = BotProcessManager(
        root,
        sink,
        credentials,
        runtime_command=cfg["RUNTIME_COMMAND"],
        install_command=cfg["INSTALL_COMMAND"],
        entry_candidates=cfg["ENTRY_FILE_CANDIDATES"],
        manifest_name=cfg["MANIFEST_FILE"],
        available_versions=cfg["AVAILABLE_NODE_VERSIONS"],
        runtime_version=cfg["DEFAULT_NODE_VERSION"],
        stop_grace_sec=cfg["STOP_GRACE_SEC"],
        kill_wait_sec=cfg["KILL_WAIT_SEC"],
        install_timeout_sec=cfg["INSTALL_TIMEOUT_SEC"],
        startup_confirm_sec=cfg["STARTUP_CONFIRM_SEC"],
    )
    credentials.load()
    password_hash = cfg.get("PASSWORD_HASH") or generate_password_hash(cfg["PASSWORD"])
    return PanelContext(
        sink=sink,
        files=files,
        credentials=credentials,
        manager=manager,
        password_hash=password_hash,
    )


def _ctx() -> PanelContext:
    return current_app.extensions["bot_panel"]


def _current_user() -> str:
    return session.get("username") or "anonymous"


def _fail(message: str, code: int = 500):
    return jsonify({"success": False, "error": message}), code


def _refresh_credentials_if(ctx: PanelContext, name: str) -> None:
    # the token file sits in the editable root; keep the cache in step with it
    if name == ctx.credentials.path.name:
        ctx.credentials.reload()


bp = Blueprint("panel", __name__)


# =============================
# Auth (session-based)
# =============================
@bp.before_app_request
def _session_and_request_log():
    log.info(
        "%s %s - User: %s - IP: %s",
        request.method, request.path, _current_user(), request.remote_addr or "unknown",
    )
    if session.get("username") and session.get("boot_id") != _ctx().boot_id:
        session.clear()


@bp.after_app_request
def _security_headers(resp):
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["X-XSS-Protection"] = "1; mode=block"
    resp.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return resp


def requires_login(fn):
    @wraps(fn)
    def wrapped(*args, **kwargs):
        if not session.get("authenticated"):
            if request.path.startswith("/api/"):
                return _fail("Authentication required", 401)
            return redirect(url_for("panel.login_page", next=request.path))
        return fn(*args, **kwargs)
    return wrapped


def _check_credentials(username: str, password: str) -> bool:
    expected = str(current_app.config["USERNAME"]).encode("utf-8")
    user_ok = secrets.compare_digest(username.encode("utf-8"), expected)
    # always hash, so a wrong username costs the same as a wrong password
    pass_ok = check_password_hash(_ctx().password_hash, password)
    return user_ok and pass_ok


@bp.get("/login")
def login_page():
    if session.get("authenticated"):
        return redirect(url_for("panel.index"))
    return render_template("login.html")


@bp.post("/api/auth/login")
def api_login():
    data = request.get_json(silent=True) or request.form
    username = str(data.get("username") or "").strip()
    password = str(data.get("password") or "")
    if not username or not password:
        raise ValidationError("Username and password are required")

    ctx = _ctx()
    if not _check_credentials(username, password):
        ctx.sink.append(f"Failed login attempt for username: {username}", "warning", "auth")
        return _fail("Invalid username or password", 401)

    session.clear()
    session.permanent = True
    session["authenticated"] = True
    session["username"] = username
    session["login_time"] = _iso_now()
    session["boot_id"] = ctx.boot_id
    ctx.sink.append(f"User {username} logged in", "success", username)
    return jsonify({"success": True, "username": username})


@bp.post("/api/auth/logout")
def api_logout():
    username = session.get("username") or "unknown"
    session.clear()
    _ctx().sink.append(f"User {username} logged out", "info", username)
    return jsonify({"success": True})


@bp.get("/api/auth/status")
def api_auth_status():
    return jsonify({
        "authenticated": bool(session.get("authenticated")),
        "username": session.get("username"),
        "loginTime": session.get("login_time"),
    })


@bp.get("/api/health")
def api_health():
    """Unauthenticated liveness probe."""
    ctx = _ctx()
    snap = ctx.manager.snapshot()
    return jsonify({
        "status": "healthy",
        "timestamp": _iso_now(),
        "uptime": round(time.monotonic() - ctx.started_mono, 3),
        "botStatus": snap.state.value,
        "botUptime": snap.uptime_ms,
        "authenticated": bool(session.get("authenticated")),
    })


# =============================
# Pages
# =============================
@bp.get("/")
@requires_login
def index():
    return render_template("index.html", username=session.get("username"))


# =============================
# Status / system
# =============================
@bp.get("/api/status")
@requires_login
def api_status():
    ctx = _ctx()
    return jsonify(build_status(ctx.manager, ctx.sink, ctx.files, session.get("username")))


@bp.get("/api/system/node-versions")
@requires_login
def api_node_versions():
    ctx = _ctx()
    return jsonify({
        "current": ctx.manager.runtime_version,
        "available": list(ctx.manager.available_versions),
        "default": current_app.config["DEFAULT_NODE_VERSION"],
    })


@bp.post("/api/system/switch-node")
@requires_login
def api_switch_node():
    data = request.get_json(silent=True) or {}
    version = _ctx().manager.set_runtime_version(data.get("version"), _current_user())
    return jsonify({
        "success": True,
        "message": f"Node.js switched to version {version}",
        "version": version,
    })


# =============================
# Files
# =============================
@bp.get("/api/files")
@requires_login
def api_files():
    ctx = _ctx()
    try:
        records = ctx.files.list_tree()
    except OSError as e:
        ctx.sink.append(f"Error reading files: {e}", "error", _current_user())
        return _fail("Failed to read files")
    return jsonify([r.to_dict() for r in records])


@bp.post("/api/upload")
@requires_login
def api_upload():
    ctx = _ctx()
    username = _current_user()
    storage = request.files.get("file")
    if storage is None or not storage.filename:
        raise ValidationError("No file uploaded")

    try:
        name, size = ctx.files.save_upload(storage)
    except OSError as e:
        ctx.sink.append(f"Error processing file: {e}", "error", username)
        return _fail(f"Failed to process file: {e}")
    _refresh_credentials_if(ctx, name)

    is_zip = Path(name).suffix.lower() == ".zip"
    ctx.sink.append(f"File uploaded: {storage.filename} ({size / 1024:.2f} KB)", "success", username)
    return jsonify({
        "success": True,
        "message": "File uploaded successfully",
        "filename": name,
        "size": size,
        "type": "zip" if is_zip else "file",
        "isZip": is_zip,
    })


@bp.post("/api/extract-zip/<filename>")
@requires_login
def api_extract_zip(filename):
    ctx = _ctx()
    username = _current_user()
    zip_path = ctx.files.archive_path(filename)

    ctx.sink.append(f"Extracting ZIP: {filename}", "info", username)
    result = extract_archive(zip_path.read_bytes(), ctx.files.root, ctx.sink, username)

    try:
        zip_path.unlink()
        ctx.sink.append(f"Deleted ZIP file: {filename}", "info", username)
    except OSError as e:
        ctx.sink.append(f"Warning: Could not delete ZIP: {e}", "warning", username)

    ctx.sink.append(f"ZIP extracted successfully: {result.extracted_count} files", "success", username)
    return jsonify({"success": True, "message": "ZIP extracted successfully", **result.to_dict()})


@bp.get("/api/files/<filename>/content")
@requires_login
def api_read_file(filename):
    ctx = _ctx()
    username = _current_user()
    try:
        content, size = ctx.files.read_text(filename)
    except OSError as e:
        ctx.sink.append(f"Error reading file {filename}: {e}", "error", username)
        return _fail("Failed to read file")
    ctx.sink.append(f"File read: {filename}", "info", username)
    return jsonify({"success": True, "filename": filename, "content": content, "size": size})


@bp.put("/api/files/<filename>/content")
@requires_login
def api_write_file(filename):
    ctx = _ctx()
    username = _current_user()
    data = request.get_json(silent=True) or {}
    content = data.get("content")
    if not isinstance(content, str):
        raise ValidationError("Content is required")
    try:
        ctx.files.write_text(filename, content)
    except OSError as e:
        ctx.sink.append(f"Error updating file {filename}: {e}", "error", username)
        return _fail("Failed to update file")
    _refresh_credentials_if(ctx, filename)
    ctx.sink.append(f"File updated: {filename}", "success", username)
    return jsonify({"success": True, "message": "File updated successfully", "filename": filename})


@bp.post("/api/files/create")
@requires_login
def api_create_file():
    ctx = _ctx()
    username = _current_user()
    data = request.get_json(silent=True) or {}
    filename = data.get("filename")
    is_folder = bool(data.get("isFolder"))
    kind = "folder" if is_folder else "file"
    if not filename:
        raise ValidationError("Filename is required")
    try:
        ctx.files.create(filename, str(data.get("content") or ""), is_folder=is_folder)
    except OSError as e:
        ctx.sink.append(f"Error creating {kind} {filename}: {e}", "error", username)
        return _fail(f"Failed to create {kind}")
    _refresh_credentials_if(ctx, filename)
    ctx.sink.append(f"{kind.capitalize()} created: {filename}", "success", username)
    return jsonify({
        "success": True,
        "message": f"{kind.capitalize()} created successfully",
        "filename": filename,
        "isFolder": is_folder,
    })


@bp.delete("/api/files/<filename>")
@requires_login
def api_delete_file(filename):
    ctx = _ctx()
    username = _current_user()
    try:
        was_dir = ctx.files.delete(filename)
    except OSError as e:
        ctx.sink.append(f"Error deleting file {filename}: {e}", "error", username)
        return _fail("Failed to delete file")
    _refresh_credentials_if(ctx, filename)
    ctx.sink.append(f"{'Directory' if was_dir else 'File'} deleted: {filename}", "warning", username)
    return jsonify({"success": True, "message": "File deleted successfully", "filename": filename})


# =============================
# Token
# =============================
@bp.post("/api/token")
@requires_login
def api_save_token():
    ctx = _ctx()
    username = _current_user()
    data = request.get_json(silent=True) or {}
    token = data.get("token")
    if not token:
        raise ValidationError("Token is required")
    try:
        ctx.credentials.save(token, ctx.manager.runtime_version)
    except OSError as e:
        ctx.sink.append(f"Error saving token: {e}", "error", username)
        return _fail("Failed to save token")
    ctx.sink.append("Discord bot token saved securely", "success", username)
    return jsonify({"success": True, "message": "Token saved successfully", "tokenSet": True})


@bp.get("/api/token/status")
@requires_login
def api_token_status():
    token = _ctx().credentials.get_token()
    return jsonify({"hasToken": bool(token), "tokenLength": len(token)})


# =============================
# Bot process
# =============================
@bp.post("/api/start")
@requires_login
def api_start():
    result = _ctx().manager.start(_current_user())
    return jsonify({"success": True, "message": "Bot is starting...", **result})


@bp.post("/api/stop")
@requires_login
def api_stop():
    return jsonify({"success": True, **_ctx().manager.stop(_current_user())})


# =============================
# Logs
# =============================
@bp.get("/api/logs")
@requires_login
def api_logs():
    limit = request.args.get("limit", type=int) or 100
    return jsonify([e.to_dict() for e in _ctx().sink.recent(limit)])


@bp.delete("/api/logs")
@requires_login
def api_clear_logs():
    _ctx().sink.clear(_current_user())
    return jsonify({"success": True, "message": "Logs cleared"})


# =============================
# Errors
# =============================
@bp.app_errorhandler(PanelError)
def _panel_error(e: PanelError):
    return jsonify(e.to_dict()), e.status_code


@bp.app_errorhandler(HTTPException)
def _http_error(e: HTTPException):
    if isinstance(e, RequestEntityTooLarge):
        mb = current_app.config["MAX_UPLOAD_MB"]
        return _fail(f"File too large. Maximum size is {mb}MB", 413)
    if e.code == 404 and request.path.startswith("/api/"):
        return jsonify({"success": False, "error": "Not found", "path": request.path}), 404
    return e


@bp.app_errorhandler(Exception)
def _unhandled_error(e: Exception):
    log.exception("Server error on %s %s", request.method, request.path)
    _ctx().sink.append(f"Server error: {e}", "error", "system")
    detail = str(e) if current_app.config.get("PANEL_ENV") == "development" else "Something went wrong"
    return jsonify({"success": False, "error": "Internal server error", "message": detail}), 500


# =============================
# Flask app
# =============================
def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_object(config)
    if overrides:
        app.config.update(overrides)
    if not app.config.get("MAX_CONTENT_LENGTH"):
        app.config["MAX_CONTENT_LENGTH"] = int(app.config["MAX_UPLOAD_MB"]) * 1024 * 1024
    app.config["PERMANENT_SESSION_LIFETIME"] = datetime.timedelta(hours=app.config["SESSION_LIFETIME_HOURS"])

    _attach_file_handler(app.config.get("PANEL_LOG_FILE", ""))
    app.extensions["bot_panel"] = build_context(app.config)
    app.register_blueprint(bp)
    return app


def _exit_on_sigterm(signum, frame):
    # turn SIGTERM into a normal exit so atexit hooks run
    sys.exit(0)


if __name__ == "__main__":
    app = create_app()
    ctx = app.extensions["bot_panel"]
    atexit.register(ctx.manager.shutdown)
    signal.signal(signal.SIGTERM, _exit_on_sigterm)

    log.info("Bot panel listening on http://%s:%s", config.FLASK_HOST, config.FLASK_PORT)
    if config.PASSWORD == "admin123" and not config.PASSWORD_HASH:
        log.warning("Default panel password in use; set PANEL_PASSWORD")
    app.run(host=config.FLASK_HOST, port=int(config.FLASK_PORT), threaded=True)
