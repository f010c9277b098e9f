"""
Mock webhook hub for integration testing.

Accepts subscribe/unsubscribe requests (Bearer ``valid-token`` only), then
verifies intent by calling the subscriber's callback with a challenge, the
way the Twitch hub does. ``POST /test/push`` makes the hub sign and deliver a
notification to a verified callback.
"""

import hashlib
import hmac
import json
import uuid
from urllib.parse import urlencode

import httpx
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

VALID_TOKEN = "valid-token"


class PushReq(BaseModel):
    callback: str
    data: list[dict]


def create_hub_app() -> FastAPI:
    app = FastAPI(title="Mock Hub")
    app.state.requests = []
    app.state.verifications = []
    app.state.subscriptions = {}
    app.state.denied_topics = set()

    async def verify_intent(params: dict) -> None:
        challenge = uuid.uuid4().hex
        query = {
            "hub.topic": params["hub.topic"],
            "hub.challenge": challenge,
        }
        if params["hub.topic"] in app.state.denied_topics:
            query["hub.mode"] = "denied"
            query["hub.reason"] = "topic not allowed"
        else:
            query["hub.mode"] = params["hub.mode"]
            query["hub.lease_seconds"] = str(params["hub.lease_seconds"])

        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{params['hub.callback']}&{urlencode(query)}")

        confirmed = resp.status_code == 200 and resp.text == challenge
        app.state.verifications.append(
            {"mode": query["hub.mode"], "callback": params["hub.callback"], "confirmed": confirmed}
        )
        if confirmed and params["hub.mode"] == "subscribe":
            app.state.subscriptions[params["hub.callback"]] = params["hub.secret"]
        elif confirmed and params["hub.mode"] == "unsubscribe":
            app.state.subscriptions.pop(params["hub.callback"], None)

    @app.post("/hub")
    async def hub(request: Request, background_tasks: BackgroundTasks):
        if request.headers.get("authorization") != f"Bearer {VALID_TOKEN}":
            return JSONResponse(
                {"error": "Unauthorized", "status": 401, "message": "Invalid OAuth token"},
                status_code=401,
            )
        params = await request.json()
        app.state.requests.append(params)
        background_tasks.add_task(verify_intent, params)
        return Response(status_code=202)

    @app.post("/test/push")
    async def push(req: PushReq):
        secret = app.state.subscriptions.get(req.callback)
        if secret is None:
            return JSONResponse({"message": "not subscribed"}, status_code=404)
        body = json.dumps({"data": req.data}).encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                req.callback,
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-Hub-Signature": f"sha256={signature}",
                },
            )
        return {"status": resp.status_code}

    return app
