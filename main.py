# main.py: timed MCQ assignment service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the host LMS (session or IAP header); this app only resolves it to g.user_id.

import os
import re
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import urlparse, parse_qs, unquote

import bleach
import click
import markdown
from flask import Flask, request, g, session, jsonify
from flask.cli import AppGroup
from markupsafe import Markup, escape

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

from assignments import create_assignment_blueprint
from attempt_gate import AttemptGate
from attempts import AttemptManager, SWEEP_LIMIT
from question_bank import QuestionBank
from results import ResultsAggregator
from scoring import ScoringEngine
from store import PgAssignmentStore

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
DEV_USER_EMAIL = (os.getenv("DEV_USER_EMAIL") or "").strip().lower()

# =============================================================================
# Database configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

ALLOW_RAW_HTML = os.getenv("ALLOW_RAW_HTML", "1").lower() in {"1", "true", "yes"}
SANITIZE_HTML = os.getenv("SANITIZE_HTML", "0").lower() in {"1", "true", "yes"}

BLEACH_ALLOWED_TAGS = [
    "a","abbr","b","blockquote","code","em","i","li","ol","strong","ul",
    "p","h1","h2","h3","h4","h5","h6","pre","hr","br","span","div","img","table",
    "thead","tbody","tr","th","td","caption","sub","sup"
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class","title"],
    "a": ["href","name","target","rel"],
    "img": ["src","alt","width","height","loading"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http","https","mailto","data"]

def _on_managed_runtime() -> bool:
    # GAE or Cloud Run, etc.
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    host = kwargs.get("host", "localhost")
    if isinstance(host, str) and host.startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {host}", flush=True)
    else:
        print(f"[DB] {origin}: TCP -> {host}:{kwargs.get('port', 5432)}", flush=True)

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    # SQLAlchemy-style schemes show up in shared env files
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = (qs.get("host") or [p.hostname])[0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}", flush=True)

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.", flush=True)
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}", flush=True)

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("\\", "\\\\").replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()),
                              min_size=1, max_size=DB_POOL_MAX, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_one(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

# =============================================================================
# Rendering helpers (Markdown/HTML) for question text and explanations
# =============================================================================
_HTML_PATTERN = re.compile(r"</?\w+[^>]*>")

def _sanitize_if_enabled(html: str) -> str:
    if not SANITIZE_HTML:
        return html
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=False,
    )

@lru_cache(maxsize=512)
def _render_rich_cached(text: str, allow_raw: bool, sanitize_flag: bool) -> str:
    if not text:
        return ""
    if allow_raw and _HTML_PATTERN.search(text):
        return _sanitize_if_enabled(text)
    if not allow_raw:
        text = str(escape(text))
    html = markdown.markdown(
        text,
        extensions=["fenced_code", "tables", "sane_lists"],
        output_format="html5",
    )
    return _sanitize_if_enabled(html)

def render_rich(text: Optional[str]) -> Markup:
    if text is None:
        return Markup("")
    text_str = text if isinstance(text, str) else str(text)
    return Markup(_render_rich_cached(text_str, ALLOW_RAW_HTML, SANITIZE_HTML))

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def current_user_email() -> Optional[str]:
    email = _session_email() or _iap_email()
    if not email and not AUTH_REQUIRED and DEV_USER_EMAIL:
        return DEV_USER_EMAIL
    return email

def ensure_user_row(email: str) -> int:
    row = fetch_one("SELECT id FROM users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'learner')
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

# =============================================================================
# LMS collaborators (fire-and-forget from the assignment core's point of view)
# =============================================================================
def mark_part_completed(student_id: int, part_id: Optional[int]):
    if not part_id:
        return
    execute("""
        UPDATE student_progress
           SET status = 'completed', completed_at = now(), updated_at = now()
         WHERE student_id = %s AND part_id = %s;
    """, (student_id, part_id))
    print(f"[sink] part {part_id} completed for user={student_id}", flush=True)

def log_content_access(user_id: int, part_id: int, action: str,
                       device_info: Optional[str] = None, ip_address: Optional[str] = None):
    execute("""
        INSERT INTO content_access_logs (user_id, part_id, action_type, device_info, ip_address)
        VALUES (%s, %s, %s, %s, %s);
    """, (user_id, part_id, action, device_info, ip_address))
    if action in ("view", "download"):
        execute("""
            UPDATE content_metadata
               SET access_count = access_count + 1, last_accessed = now()
             WHERE part_id = %s;
        """, (part_id,))

# =============================================================================
# Assignment components
# =============================================================================
store = PgAssignmentStore(get_conn)
bank = QuestionBank(store, render=render_rich)
scorer = ScoringEngine(bank)
results = ResultsAggregator(store)
gate = AttemptGate(store)
manager = AttemptManager(store, bank, scorer, results, gate, on_passed=mark_part_completed)

# =============================================================================
# Request identity
# =============================================================================
_PUBLIC_PATHS = {"/healthz", BASE_PATH + "/healthz"}

@app.before_request
def attach_identity():
    if request.path in _PUBLIC_PATHS:
        return None
    email = current_user_email()
    if email:
        g.user_email = email
        try:
            g.user_id = ensure_user_row(email)
        except Exception as e:
            print(f"[auth] ensure_user_row failed for {email}: {e}", flush=True)
            return jsonify({"ok": False, "error": "identity unavailable"}), 503
        return None
    if AUTH_REQUIRED:
        return jsonify({"ok": False, "error": "unauthorized"}), 401
    return None

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

if BASE_PATH:
    app.add_url_rule(BASE_PATH + "/healthz", endpoint="healthz_alias", view_func=healthz)

# =============================================================================
# Blueprints
# =============================================================================
_assignment_deps: Dict[str, Any] = {
    "store": store,
    "bank": bank,
    "gate": gate,
    "manager": manager,
    "results": results,
    "log_access": log_content_access,
}
app.register_blueprint(create_assignment_blueprint(BASE_PATH, _assignment_deps))

# =============================================================================
# CLI: flask --app main assignments <command>
# =============================================================================
assignments_cli = AppGroup("assignments", help="Assignment attempt maintenance.")

@assignments_cli.command("init-db")
def init_db_command():
    """Create the assignment tables and indexes if missing."""
    store.ensure_schema()
    click.echo("assignment schema ready")

@assignments_cli.command("sweep-expired")
@click.option("--limit", type=int, default=SWEEP_LIMIT, show_default=True,
              help="Max open attempts to inspect in one run.")
def sweep_expired_command(limit: int):
    """Time out abandoned attempts past their limit, scoring saved answers."""
    closed = manager.sweep_expired(limit=limit)
    click.echo(f"timed out {len(closed)} attempt(s)")
    for attempt_id in closed:
        click.echo(f"  attempt {attempt_id}")

app.cli.add_command(assignments_cli)

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
