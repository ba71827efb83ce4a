import os
import asyncio
import logging
from typing import Any, Dict

import psutil
from fastapi import FastAPI, Request, Form, HTTPException, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import RedirectResponse, JSONResponse

from cogs.Legislature.durations import now_ms
from cogs.Legislature.errors import LegislatureError, NotFound, StorageFailure
from cogs.Legislature.tally import QuantitativeOutcome

log = logging.getLogger("dashboard")

# --- FastAPI App Setup ---
app = FastAPI()
app.state.bot = None
app.state.legislature = None

# --- Dependency for Authentication ---
async def get_websocket_user(websocket: WebSocket):
    session_id_from_url = websocket.query_params.get("session_id")
    if session_id_from_url and session_id_from_url == os.getenv("DASHBOARD_SESSION_ID"):
        return session_id_from_url

    await websocket.close(code=1008)
    raise WebSocketDisconnect(code=1008, reason="Invalid session ID in URL")

async def get_current_user(request: Request):
    """
    Checks if a user is authenticated by looking for a session cookie.
    If not, it redirects them to the login page.
    """
    session_id = request.cookies.get("session_id")
    if session_id and session_id == os.getenv("DASHBOARD_SESSION_ID"):
        return session_id

    raise HTTPException(status_code=303, detail="Redirecting to login", headers={"Location": "/login"})

def get_legislature(request: Request):
    """The Legislature cog, either set directly or reached through the bot."""
    legislature = request.app.state.legislature
    if legislature is None:
        legislature = getattr(request.app.state.bot, "legislature", None)
    if legislature is None:
        raise HTTPException(status_code=503, detail="Bot is not ready.")
    return legislature

def as_http_error(error: LegislatureError) -> HTTPException:
    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=error.user_message)
    if isinstance(error, StorageFailure):
        return HTTPException(status_code=503, detail=error.user_message)
    return HTTPException(status_code=409, detail=error.user_message)

# --- Authentication Routes ---

@app.get("/logout")
async def logout():
    """Logs the user out by clearing the session cookie."""
    response = RedirectResponse(url="/login")
    response.delete_cookie("session_id")
    return response

@app.get("/login")
async def login_page(request: Request):
    session_id = request.cookies.get("session_id")
    if session_id and session_id == os.getenv("DASHBOARD_SESSION_ID"):
        return RedirectResponse(url="/")
    return JSONResponse(content={"detail": "POST the dashboard password as form field 'password'."})

@app.post("/login")
async def login(password: str = Form(...)):
    """Handles the login form submission."""
    expected = os.getenv("DASHBOARD_PASSWORD")
    if expected and password == expected:
        redirect_response = RedirectResponse(url="/", status_code=303)
        redirect_response.set_cookie(key="session_id", value=os.getenv("DASHBOARD_SESSION_ID"), httponly=True)
        return redirect_response

    raise HTTPException(status_code=303, detail="Incorrect password", headers={"Location": "/login"})

@app.get("/api/session", dependencies=[Depends(get_current_user)])
async def get_session_id(request: Request):
    return JSONResponse(content={"session_id": request.cookies.get("session_id")})

# --- Overview ---

@app.get("/", dependencies=[Depends(get_current_user)])
async def dashboard_page(request: Request):
    bot = request.app.state.bot
    legislature = request.app.state.legislature or getattr(bot, "legislature", None)
    ready = bool(bot and bot.is_ready())
    overview: Dict[str, Any] = {
        "bot_name": bot.user.name if ready else "Bot is starting...",
        "server_name": bot.guilds[0].name if ready and bot.guilds else "N/A",
    }
    if legislature is not None:
        overview["open_votes"] = len(await legislature.db.get_open_voting_sessions())
        overview["open_meetings"] = len(await legislature.db.get_open_meetings())
        overview["armed_timers"] = len(legislature.scheduler.keys())
    return overview

# --- Votes ---

@app.get("/api/votes", dependencies=[Depends(get_current_user)])
async def list_open_votes(legislature=Depends(get_legislature)):
    now = now_ms()
    votes = []
    for session in await legislature.db.get_open_voting_sessions():
        proposal = await legislature.db.get_proposal(session.proposal_id)
        counts = await legislature.db.get_vote_counts(session.proposal_id, session.stage)
        votes.append({
            "proposal_id": session.proposal_id,
            "number": proposal.number if proposal else None,
            "name": proposal.name if proposal else None,
            "stage": session.stage,
            "formula": session.formula.value,
            "is_secret": session.is_secret,
            "expires_at": session.expires_at,
            "time_left_ms": session.time_left(now),
            "ballots": sum(counts.values()),
            "timer_armed": legislature.scheduler.is_armed(legislature.voting.timer_key(session.proposal_id)),
        })
    return {"votes": votes}

@app.get("/api/proposals/{proposal_id}", dependencies=[Depends(get_current_user)])
async def get_proposal(proposal_id: str, legislature=Depends(get_legislature)):
    proposal = await legislature.db.get_proposal(proposal_id)
    if proposal is None:
        raise HTTPException(status_code=404, detail="Proposal not found.")
    return {
        "id": proposal.id,
        "number": proposal.number,
        "name": proposal.name,
        "chamber": proposal.chamber.value,
        "status": proposal.status.value,
        "is_quantitative": proposal.is_quantitative,
        "parent_proposal_id": proposal.parent_proposal_id,
        "continued_as": [child.id for child in await legislature.db.get_child_proposals(proposal.id)],
        "events": [
            {"type": e.type.value, "timestamp": e.timestamp, "description": e.description, "result": e.result}
            for e in proposal.events
        ],
    }

@app.post("/api/votes/{proposal_id}/close", dependencies=[Depends(get_current_user)])
async def close_vote(proposal_id: str, legislature=Depends(get_legislature)):
    try:
        outcome = await legislature.voting.close_voting(proposal_id)
    except LegislatureError as e:
        raise as_http_error(e)
    if outcome is None:
        raise HTTPException(status_code=409, detail="Voting is already closed.")
    body = {"proposal_id": proposal_id, "stage": getattr(outcome, "stage", 1)}
    if isinstance(outcome, QuantitativeOutcome):
        body.update(winner=outcome.winner, runoff_candidates=outcome.runoff_candidates)
    else:
        body.update(status=outcome.status.value, quorum_met=outcome.quorum_met)
    log.info("Vote on %s closed from the dashboard", proposal_id)
    return body

# --- Meetings ---

@app.get("/api/meetings", dependencies=[Depends(get_current_user)])
async def list_open_meetings(legislature=Depends(get_legislature)):
    now = now_ms()
    meetings = []
    for meeting in await legislature.db.get_open_meetings():
        meetings.append({
            "id": meeting.id,
            "chamber": meeting.chamber.value,
            "title": meeting.title,
            "quorum": meeting.quorum,
            "registered": await legislature.db.get_registration_count(meeting.id),
            "expires_at": meeting.expires_at,
            "time_left_ms": meeting.time_left(now),
        })
    return {"meetings": meetings}

@app.post("/api/meetings/{meeting_id}/finalize", dependencies=[Depends(get_current_user)])
async def finalize_meeting(meeting_id: str, legislature=Depends(get_legislature)):
    try:
        report = await legislature.meetings.finalize(meeting_id)
    except LegislatureError as e:
        raise as_http_error(e)
    if report is None:
        raise HTTPException(status_code=409, detail="Registration is already closed.")
    log.info("Meeting %s finalized from the dashboard", meeting_id)
    return {
        "meeting_id": meeting_id,
        "registered": report.registered_count,
        "quorum": report.quorum,
        "quorum_met": report.quorum_met,
        "granted": report.granted,
        "already_held": report.already_held,
        "failed": report.failed,
        "summary": report.summary(),
    }

# --- WebSocket stats ---

@app.websocket("/ws/stats")
async def websocket_endpoint(websocket: WebSocket, session_id: str = Depends(get_websocket_user)):
    """Provides real-time bot, legislature and server stats via WebSocket."""
    await websocket.accept()
    try:
        while True:
            bot = websocket.app.state.bot
            ready = bool(bot and bot.is_ready())
            legislature = websocket.app.state.legislature or getattr(bot, "legislature", None)

            bot_stats = {
                "guild_count": len(bot.guilds) if ready else 0,
                "latency_ms": round(bot.latency * 1000) if ready else "N/A",
                "user_count": len(bot.users) if ready else 0,
            }

            timers = legislature.scheduler.keys() if legislature is not None else []
            legislature_stats = {
                "vote_timers": sum(1 for key in timers if key.startswith("vote:")),
                "meeting_timers": sum(1 for key in timers if key.startswith("meeting:")),
            }

            memory = psutil.virtual_memory()
            system_stats = {
                "cpu_percent": psutil.cpu_percent(interval=None),
                "ram_total_gb": round(memory.total / (1024**3), 2),
                "ram_used_gb": round(memory.used / (1024**3), 2),
                "ram_percent": memory.percent,
                "boot_time": round(psutil.boot_time()),
            }

            await websocket.send_json({"bot": bot_stats, "legislature": legislature_stats, "system": system_stats})

            await asyncio.sleep(5)
    except WebSocketDisconnect:
        log.debug("Stats client disconnected")
