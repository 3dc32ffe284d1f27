# live-vote/voting.py
# Session / round state machine for the live audience vote
# - one dict aggregate per session, passed explicitly to every helper
# - duplicate-vote prevention keyed by fingerprint with a connection fallback
# - dynamic teams and an editable round catalog
# - bounded history of closed rounds (deep copies, never live references)

from __future__ import annotations
import copy
import logging
import time

logger = logging.getLogger(__name__)

# ================== Constants ==================
TEAM_COLORS = [
    "#e53935",  # red
    "#1e88e5",  # blue
    "#43a047",  # green
    "#fb8c00",  # orange
    "#8e24aa",  # purple
    "#00acc1",  # cyan
    "#fdd835",  # yellow
    "#6d4c41",  # brown
]

HISTORY_LIMIT = 10
MIN_TEAMS = 2
MIN_ROUNDS = 1
MAX_NAME_LEN = 48

DEFAULT_TEAM_NAMES = ("Team 1", "Team 2")
DEFAULT_ROUND_NAMES = ("Round 1",)

# ================== Errors ==================
class VotingError(Exception):
    """Base class for every rejection raised by the session helpers."""


class VoteRejected(VotingError):
    reason = "rejected"

    def __init__(self, msg: str = "", previous_team_id: int | None = None):
        super().__init__(msg or self.reason)
        self.previous_team_id = previous_team_id


class VotingClosed(VoteRejected):
    reason = "voting_closed"


class DuplicateVote(VoteRejected):
    reason = "already_voted"


class TeamNotFound(VoteRejected):
    reason = "team_not_found"


class InvariantViolation(VotingError):
    reason = "invariant_violation"

# ================== Time helpers ==================
def now_wall() -> float:
    return time.time()

def now_ms() -> int:
    return int(time.time() * 1000)

def next_token(previous: int | None) -> int:
    # strictly increasing even when the clock stalls or steps back
    return max((previous or 0) + 1, now_ms())

# ================== Naming helpers ==================
def default_team_name(team_id: int) -> str:
    return f"Team {team_id + 1}"

def default_round_name(round_id: int) -> str:
    return f"Round {round_id}"

def team_color(team_id: int) -> str:
    return TEAM_COLORS[team_id % len(TEAM_COLORS)]

def clean_name(name) -> str:
    if not isinstance(name, str):
        return ""
    return name.strip()[:MAX_NAME_LEN]

# ================== In-memory model ==================
def new_team(team_id: int, name: str = "") -> dict:
    return {
        "id": team_id,
        "name": clean_name(name) or default_team_name(team_id),
        "votes": 0,
        "color": team_color(team_id),
    }

def new_session(team_names=None, round_names=None) -> dict:
    team_names = list(team_names or DEFAULT_TEAM_NAMES)
    while len(team_names) < MIN_TEAMS:
        team_names.append("")
    round_names = list(round_names or DEFAULT_ROUND_NAMES)

    rounds = [
        {"id": i, "name": clean_name(n) or default_round_name(i)}
        for i, n in enumerate(round_names, start=1)
    ]
    return {
        # live round
        "teams": [new_team(i, n) for i, n in enumerate(team_names)],
        "rounds": rounds,                 # catalog: [{"id", "name"}]
        "current_round_id": rounds[0]["id"],
        "round_name": rounds[0]["name"],  # display name, may diverge from catalog
        "session_token": next_token(None),
        "voting_open": True,
        "relaxed_mode": False,

        # identity maps, cleared together on every token change
        "voters_by_fp": {},   # fingerprint -> {"fingerprint", "secondary_key", "team_id"}
        "voters_by_sid": {},  # sid -> team_id

        # sid -> fingerprint for registered connections
        "connections": {},

        "history": [],        # most recent first, bounded by HISTORY_LIMIT
    }

# ================== Identity resolver ==================
def has_voted(s: dict, fingerprint: str | None, sid: str) -> bool:
    if s["relaxed_mode"]:
        return False
    if fingerprint and fingerprint in s["voters_by_fp"]:
        return True
    return sid in s["voters_by_sid"]

def previous_choice(s: dict, fingerprint: str | None, sid: str) -> int | None:
    """Team chosen earlier by this identity; the fingerprint record wins over the connection."""
    if fingerprint and fingerprint in s["voters_by_fp"]:
        return s["voters_by_fp"][fingerprint]["team_id"]
    return s["voters_by_sid"].get(sid)

def record_voter(s: dict, fingerprint: str | None, secondary_key: str | None, sid: str, team_id: int):
    if s["relaxed_mode"]:
        return
    if fingerprint:
        s["voters_by_fp"][fingerprint] = {
            "fingerprint": fingerprint,
            "secondary_key": secondary_key,
            "team_id": team_id,
        }
    s["voters_by_sid"][sid] = team_id

def clear_voters(s: dict):
    # swap in fresh maps so no reader sees a half-cleared pair
    s["voters_by_fp"], s["voters_by_sid"] = {}, {}

# ================== Connected users ==================
def register_connection(s: dict, sid: str, fingerprint: str):
    s["connections"][sid] = fingerprint

def drop_connection(s: dict, sid: str) -> bool:
    return s["connections"].pop(sid, None) is not None

def connected_users(s: dict) -> int:
    return len(set(s["connections"].values()))

def total_voters(s: dict) -> int:
    return len(s["voters_by_fp"]) or len(s["voters_by_sid"])

def participation_percent(s: dict) -> int:
    users = connected_users(s)
    if users <= 0:
        return 0
    return round(100 * total_voters(s) / users)

# ================== Team registry ==================
def find_team(s: dict, team_id) -> dict | None:
    for t in s["teams"]:
        if t["id"] == team_id:
            return t
    return None

def add_team(s: dict, name: str = "") -> dict:
    team_id = max((t["id"] for t in s["teams"]), default=-1) + 1
    team = new_team(team_id, name)
    s["teams"].append(team)
    return team

def remove_team(s: dict, team_id: int) -> bool:
    if len(s["teams"]) <= MIN_TEAMS:
        raise InvariantViolation(f"At least {MIN_TEAMS} teams are required")
    team = find_team(s, team_id)
    if team is None:
        return False
    s["teams"].remove(team)
    return True

def rename_team(s: dict, team_id: int, name: str) -> bool:
    team = find_team(s, team_id)
    if team is None:
        return False
    team["name"] = clean_name(name) or default_team_name(team_id)
    return True

def reset_votes(s: dict):
    for t in s["teams"]:
        t["votes"] = 0

def increment(s: dict, team_id: int) -> bool:
    team = find_team(s, team_id)
    if team is None:
        return False
    team["votes"] += 1
    return True

def total_votes(s: dict) -> int:
    return sum(t["votes"] for t in s["teams"])

# ================== Round registry ==================
def find_round(s: dict, round_id) -> dict | None:
    for r in s["rounds"]:
        if r["id"] == round_id:
            return r
    return None

def add_round_entry(s: dict, name: str = "") -> dict:
    # never reuse the live round id, even after its catalog entry was removed
    round_id = max([r["id"] for r in s["rounds"]] + [s["current_round_id"]]) + 1
    entry = {"id": round_id, "name": clean_name(name) or default_round_name(round_id)}
    s["rounds"].append(entry)
    return entry

def advance_round(s: dict) -> dict:
    """
    Move the round pointer to the next catalog entry, synthesizing one when the
    catalog is exhausted. Never fails.
    """
    ids = [r["id"] for r in s["rounds"]]
    try:
        pos = ids.index(s["current_round_id"])
    except ValueError:
        # current round was removed from the catalog; continue after the highest id below it
        below = [i for i, rid in enumerate(ids) if rid < s["current_round_id"]]
        pos = below[-1] if below else -1

    appended = False
    if pos + 1 < len(s["rounds"]):
        entry = s["rounds"][pos + 1]
    else:
        entry = add_round_entry(s)
        appended = True

    s["current_round_id"] = entry["id"]
    s["round_name"] = entry["name"]
    return {"round_id": entry["id"], "round_name": entry["name"], "appended": appended}

def remove_round_entry(s: dict, round_id: int) -> bool:
    if len(s["rounds"]) <= MIN_ROUNDS:
        raise InvariantViolation(f"At least {MIN_ROUNDS} round is required")
    entry = find_round(s, round_id)
    if entry is None:
        return False
    s["rounds"].remove(entry)
    return True

def rename_round_entry(s: dict, round_id: int, name: str) -> bool:
    """Rename a catalog entry. The live round follows when it is the one renamed."""
    entry = find_round(s, round_id)
    if entry is None:
        return False
    entry["name"] = clean_name(name)
    if round_id == s["current_round_id"]:
        s["round_name"] = entry["name"]
    return True

def replace_rounds(s: dict, entries: list) -> bool:
    """
    Swap the whole catalog. Entries are normalized already ({"id": int, "name": str}).
    Returns True when the current round is present and its name was adopted.
    """
    if len(entries) < MIN_ROUNDS:
        raise InvariantViolation(f"At least {MIN_ROUNDS} round is required")
    s["rounds"] = [{"id": e["id"], "name": clean_name(e["name"])} for e in entries]
    current = find_round(s, s["current_round_id"])
    if current is None:
        return False
    s["round_name"] = current["name"]
    return True

# ================== History ledger ==================
def push_history(s: dict, entry: dict):
    s["history"].insert(0, entry)
    if len(s["history"]) > HISTORY_LIMIT:
        s["history"] = s["history"][:HISTORY_LIMIT]

def snapshot_round(s: dict) -> dict:
    return {
        "round_id": s["current_round_id"],
        "round_name": s["round_name"],
        "teams": copy.deepcopy(s["teams"]),
        "total_voters": total_voters(s),
        "closed_at": now_wall(),
    }

# ================== Session transitions ==================
def cast_vote(s: dict, team_id, fingerprint: str | None, secondary_key: str | None, sid: str) -> dict:
    """
    Count one vote. Raises a VoteRejected subclass without touching state when
    voting is closed, the identity already voted, or the team is unknown.
    """
    if not s["voting_open"]:
        raise VotingClosed("Voting is closed")
    if has_voted(s, fingerprint, sid):
        raise DuplicateVote("Already voted", previous_team_id=previous_choice(s, fingerprint, sid))
    team = find_team(s, team_id)
    if team is None:
        raise TeamNotFound(f"Team {team_id} not found")

    increment(s, team["id"])
    record_voter(s, fingerprint, secondary_key, sid, team["id"])
    return team

def reset_session(s: dict):
    reset_votes(s)
    clear_voters(s)
    s["voting_open"] = True
    s["session_token"] = next_token(s["session_token"])

def next_round(s: dict) -> dict:
    archived = total_votes(s) > 0
    if archived:
        push_history(s, snapshot_round(s))
    moved = advance_round(s)
    reset_votes(s)
    clear_voters(s)
    s["session_token"] = next_token(s["session_token"])
    s["voting_open"] = True
    return {"archived": archived, "appended": moved["appended"]}

def toggle_voting(s: dict) -> bool:
    s["voting_open"] = not s["voting_open"]
    return s["voting_open"]

def toggle_relaxed(s: dict) -> bool:
    s["relaxed_mode"] = not s["relaxed_mode"]
    clear_voters(s)
    return s["relaxed_mode"]

def set_round_name(s: dict, name: str):
    s["round_name"] = clean_name(name)

# ================== Serialization helpers ==================
def teams_payload(s: dict) -> list:
    return [dict(t) for t in s["teams"]]

def round_payload(s: dict) -> dict:
    return {
        "roundId": s["current_round_id"],
        "roundName": s["round_name"],
        "sessionToken": s["session_token"],
        "votingOpen": s["voting_open"],
        "relaxedMode": s["relaxed_mode"],
        "teams": teams_payload(s),
    }

def results_payload(s: dict) -> dict:
    return {"teams": teams_payload(s), "totalVoters": total_voters(s)}

def state_payload(s: dict, sid: str | None = None, fingerprint: str | None = None) -> dict:
    """Snapshot for one connection; carries that connection's own voting status."""
    st = round_payload(s)
    st["totalVoters"] = total_voters(s)
    voted = sid is not None and has_voted(s, fingerprint, sid)
    st["hasVoted"] = voted
    st["votedTeamId"] = previous_choice(s, fingerprint, sid) if voted else None
    return st

def catalog_payload(s: dict) -> dict:
    return {"rounds": [dict(r) for r in s["rounds"]], "currentRoundId": s["current_round_id"]}

def history_payload(s: dict) -> dict:
    return {
        "history": [
            {
                "roundId": h["round_id"],
                "roundName": h["round_name"],
                "teams": copy.deepcopy(h["teams"]),
                "totalVoters": h["total_voters"],
                "closedAt": h["closed_at"],
            }
            for h in s["history"]
        ]
    }

def participation_payload(s: dict) -> dict:
    voters = total_voters(s)
    users = connected_users(s)
    return {
        "totalVoters": voters,
        "connectedUsers": users,
        "notVoted": max(0, users - voters),
        "participationPercent": participation_percent(s),
    }

def admin_payload(s: dict) -> dict:
    st = round_payload(s)
    st.update(catalog_payload(s))
    st.update(history_payload(s))
    st.update(participation_payload(s))
    return st
