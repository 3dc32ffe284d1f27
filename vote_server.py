# live-vote/vote_server.py
# Flask + Flask-SocketIO coordinator for live audience voting (voters + admin console)
# - one vote per identity per round, relaxed mode for unlimited voting
# - admin capability token issued on login, checked on every admin event
# - three audiences: the calling connection, everyone, the admins room
# - every handler runs under one lock so state transitions never interleave

from __future__ import annotations
import functools
import logging
import os
import secrets
import threading
from flask import Flask, request
from flask_socketio import SocketIO, emit, join_room
from werkzeug.middleware.proxy_fix import ProxyFix

import voting

logger = logging.getLogger(__name__)

# ================== Config ==================
APP_HOST = os.environ.get("VOTE_HOST", "0.0.0.0")
APP_PORT = int(os.environ.get("VOTE_PORT", "3000"))

# Admin password (override with VOTE_ADMIN_PASSWORD)
ADMIN_PASSWORD = os.environ.get("VOTE_ADMIN_PASSWORD", "admin123")
ADMIN_ROOM = "admins"

# Socket.IO tuning (mobile-friendly)
SOCKET_KW = dict(
    cors_allowed_origins="*",
    async_mode="threading",
    ping_interval=20,
    ping_timeout=30,
    max_http_buffer_size=1_000_000
)

MAX_FINGERPRINT_LEN = 128

# ================== Payload helpers ==================
def _payload(data) -> dict:
    return data if isinstance(data, dict) else {}

def _as_int(x) -> int | None:
    if isinstance(x, bool):
        return None
    try:
        return int(x)
    except (TypeError, ValueError):
        return None

def _as_text(x, limit=voting.MAX_NAME_LEN) -> str | None:
    if not isinstance(x, str):
        return None
    return x.strip()[:limit]

def _as_fingerprint(x) -> str | None:
    # opaque and untrusted; only used as a dedup key
    return _as_text(x, MAX_FINGERPRINT_LEN) or None

def _normalize_rounds(entries) -> list | None:
    if not isinstance(entries, list):
        return None
    out, seen = [], set()
    for e in entries:
        if not isinstance(e, dict):
            continue
        rid = _as_int(e.get("id"))
        if rid is None or rid in seen:
            continue
        seen.add(rid)
        out.append({"id": rid, "name": _as_text(e.get("name")) or ""})
    return out

# ================== App init ==================
def create_app(config: dict | None = None):
    """Build the Flask app and its Socket.IO server around a fresh voting session."""
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app)
    app.config.update(
        SECRET_KEY=secrets.token_hex(16),
        ADMIN_PASSWORD=ADMIN_PASSWORD,
        TEAM_NAMES=None,
        ROUND_NAMES=None,
    )
    if config:
        app.config.update(config)

    socketio = SocketIO(app, **SOCKET_KW)
    session_state = voting.new_session(app.config["TEAM_NAMES"], app.config["ROUND_NAMES"])
    app.extensions["vote_session"] = session_state
    register_handlers(socketio, session_state, app.config["ADMIN_PASSWORD"])
    return app, socketio

# ================== Socket.IO handlers ==================
def register_handlers(socketio: SocketIO, s: dict, admin_password: str):
    lock = threading.Lock()
    admin_tokens: dict[str, str] = {}  # token -> sid that logged in

    def serialized(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            with lock:
                return fn(*args, **kwargs)
        return wrapper

    # ---- audiences ----
    def to_caller(event, payload):
        emit(event, payload, to=request.sid)

    def to_all(event, payload):
        socketio.emit(event, payload)

    def to_admins(event, payload):
        socketio.emit(event, payload, to=ADMIN_ROOM)

    def push_participation():
        to_admins("participation", voting.participation_payload(s))

    def is_admin(p: dict) -> bool:
        token = p.get("token")
        if isinstance(token, str) and admin_tokens.get(token) == request.sid:
            return True
        logger.warning("Ignoring admin event from unauthorized connection %s", request.sid)
        return False

    def admin_error(reason: str, msg: str):
        to_caller("admin_error", {"reason": reason, "msg": msg})

    # ---- voters ----
    @socketio.on("connect")
    @serialized
    def on_connect(auth=None):
        logger.info("User connected: %s", request.sid)
        to_caller("state", voting.state_payload(s, request.sid))

    @socketio.on("request_state")
    @serialized
    def request_state(data=None):
        fp = s["connections"].get(request.sid)
        to_caller("state", voting.state_payload(s, request.sid, fp))

    @socketio.on("register_identity")
    @serialized
    def register_identity(data=None):
        raw = data if isinstance(data, str) else _payload(data).get("fingerprint")
        fp = _as_fingerprint(raw)
        if fp is None:
            return
        voting.register_connection(s, request.sid, fp)
        to_caller("state", voting.state_payload(s, request.sid, fp))
        push_participation()

    @socketio.on("cast_vote")
    @serialized
    def cast_vote(data=None):
        p = _payload(data)
        sid = request.sid
        team_id = _as_int(p.get("teamId"))
        fp = _as_fingerprint(p.get("fingerprint")) or s["connections"].get(sid)
        secondary = _as_text(p.get("secondaryKey"), MAX_FINGERPRINT_LEN)

        try:
            team = voting.cast_vote(s, team_id, fp, secondary, sid)
        except voting.VoteRejected as e:
            logger.debug("Vote from %s rejected: %s", sid, e.reason)
            to_caller("vote_rejected", {
                "reason": e.reason,
                "msg": str(e),
                "previousTeamId": e.previous_team_id,
            })
            return

        to_caller("vote_accepted", {"teamId": team["id"], "sessionToken": s["session_token"]})
        to_all("results", voting.results_payload(s))
        push_participation()

    # ---- admin ----
    @socketio.on("admin_login")
    @serialized
    def admin_login(data=None):
        password = data if isinstance(data, str) else _payload(data).get("password")
        if not isinstance(password, str) or not secrets.compare_digest(password, admin_password):
            logger.warning("Failed admin login from %s", request.sid)
            to_caller("admin_auth", {"ok": False})
            return
        token = secrets.token_urlsafe(16)
        admin_tokens[token] = request.sid
        join_room(ADMIN_ROOM)
        logger.info("Admin logged in: %s", request.sid)
        to_caller("admin_auth", {"ok": True, "token": token})
        to_caller("admin_state", voting.admin_payload(s))

    @socketio.on("admin_reset")
    @serialized
    def admin_reset(data=None):
        if not is_admin(_payload(data)):
            return
        voting.reset_session(s)
        logger.info("Session reset, token %s", s["session_token"])
        st = voting.round_payload(s)
        st["totalVoters"] = voting.total_voters(s)
        to_all("session_reset", st)
        push_participation()

    @socketio.on("admin_next_round")
    @serialized
    def admin_next_round(data=None):
        if not is_admin(_payload(data)):
            return
        res = voting.next_round(s)
        logger.info("Advanced to round %s (%s)", s["current_round_id"], s["round_name"])
        if res["archived"]:
            to_admins("history", voting.history_payload(s))
        to_all("round_advanced", voting.round_payload(s))
        if res["appended"]:
            to_admins("round_catalog", voting.catalog_payload(s))
        push_participation()

    @socketio.on("admin_toggle_voting")
    @serialized
    def admin_toggle_voting(data=None):
        if not is_admin(_payload(data)):
            return
        is_open = voting.toggle_voting(s)
        logger.info("Voting %s", "opened" if is_open else "closed")
        to_all("voting_status", {
            "votingOpen": is_open,
            "relaxedMode": s["relaxed_mode"],
            "teams": voting.teams_payload(s),
            "totalVoters": voting.total_voters(s),
        })

    @socketio.on("admin_toggle_relaxed")
    @serialized
    def admin_toggle_relaxed(data=None):
        if not is_admin(_payload(data)):
            return
        relaxed = voting.toggle_relaxed(s)
        logger.info("Relaxed mode %s", "on" if relaxed else "off")
        to_all("relaxed_mode", {"relaxedMode": relaxed})
        push_participation()

    @socketio.on("admin_set_round_name")
    @serialized
    def admin_set_round_name(data=None):
        p = _payload(data)
        if not is_admin(p):
            return
        voting.set_round_name(s, _as_text(p.get("name")) or "")
        to_all("round_name", {"roundId": s["current_round_id"], "roundName": s["round_name"]})

    @socketio.on("admin_upsert_team")
    @serialized
    def admin_upsert_team(data=None):
        p = _payload(data)
        if not is_admin(p):
            return
        team_id = _as_int(p.get("id"))
        name = _as_text(p.get("name")) or ""
        if team_id is not None and voting.find_team(s, team_id) is not None:
            voting.rename_team(s, team_id, name)
            logger.info("Renamed team %s", team_id)
        else:
            team = voting.add_team(s, name)
            logger.info("Added team %s (%s)", team["id"], team["name"])
        to_all("teams", {"teams": voting.teams_payload(s)})

    @socketio.on("admin_remove_team")
    @serialized
    def admin_remove_team(data=None):
        p = _payload(data)
        if not is_admin(p):
            return
        team_id = _as_int(p.get("id"))
        try:
            removed = voting.remove_team(s, team_id)
        except voting.InvariantViolation as e:
            logger.warning("Refused to remove team %s: %s", team_id, e)
            admin_error(e.reason, str(e))
            return
        if not removed:
            admin_error("team_not_found", f"Team {team_id} not found")
            return
        logger.info("Removed team %s", team_id)
        to_all("teams", {"teams": voting.teams_payload(s)})

    @socketio.on("admin_replace_rounds")
    @serialized
    def admin_replace_rounds(data=None):
        p = _payload(data)
        if not is_admin(p):
            return
        entries = _normalize_rounds(p.get("rounds"))
        if entries is None:
            return
        try:
            adopted = voting.replace_rounds(s, entries)
        except voting.InvariantViolation as e:
            logger.warning("Refused to replace round catalog: %s", e)
            admin_error(e.reason, str(e))
            return
        logger.info("Round catalog replaced with %d entries", len(entries))
        to_admins("round_catalog", voting.catalog_payload(s))
        if adopted:
            to_all("round_name", {"roundId": s["current_round_id"], "roundName": s["round_name"]})

    @socketio.on("admin_add_round")
    @serialized
    def admin_add_round(data=None):
        p = _payload(data)
        if not is_admin(p):
            return
        entry = voting.add_round_entry(s, _as_text(p.get("name")) or "")
        logger.info("Added round %s (%s)", entry["id"], entry["name"])
        to_admins("round_catalog", voting.catalog_payload(s))

    @socketio.on("admin_remove_round")
    @serialized
    def admin_remove_round(data=None):
        p = _payload(data)
        if not is_admin(p):
            return
        round_id = _as_int(p.get("id"))
        try:
            removed = voting.remove_round_entry(s, round_id)
        except voting.InvariantViolation as e:
            logger.warning("Refused to remove round %s: %s", round_id, e)
            admin_error(e.reason, str(e))
            return
        if not removed:
            admin_error("round_not_found", f"Round {round_id} not found")
            return
        logger.info("Removed round %s", round_id)
        to_admins("round_catalog", voting.catalog_payload(s))

    @socketio.on("admin_rename_round")
    @serialized
    def admin_rename_round(data=None):
        p = _payload(data)
        if not is_admin(p):
            return
        round_id = _as_int(p.get("id"))
        if not voting.rename_round_entry(s, round_id, _as_text(p.get("name")) or ""):
            admin_error("round_not_found", f"Round {round_id} not found")
            return
        to_admins("round_catalog", voting.catalog_payload(s))
        if round_id == s["current_round_id"]:
            to_all("round_name", {"roundId": round_id, "roundName": s["round_name"]})

    @socketio.on("disconnect")
    @serialized
    def on_disconnect(reason=None):
        sid = request.sid
        logger.info("User disconnected: %s", sid)
        for token in [t for t, owner in admin_tokens.items() if owner == sid]:
            admin_tokens.pop(token, None)
        if voting.drop_connection(s, sid):
            push_participation()

# ================== Run ==================
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    app, socketio = create_app()
    logger.info("Vote server running on port %s", APP_PORT)
    socketio.run(app, host=APP_HOST, port=APP_PORT, debug=False, allow_unsafe_werkzeug=True)
