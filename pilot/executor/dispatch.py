"""Action dispatch — one handler per ActionKind, checked exhaustive at import."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

from pilot.common.errors import SecurityRejection, TransientExecutionFailure
from pilot.common.protocol import Action, ActionKind
from pilot.executor.browser import BrowserSession
from pilot.executor.skills import SkillSandbox

logger = logging.getLogger(__name__)

K = ActionKind


class Outbox(Protocol):
    """Side-effecting services that are not browser actions."""

    async def send_email(self, owner_id: str, to: str, subject: str, body: str) -> None: ...
    async def schedule(self, owner_id: str, when: str, text: str) -> None: ...
    async def remember(self, owner_id: str, fact: str) -> None: ...


@dataclass
class ExecutionContext:
    task_id: str
    owner_id: str
    session: Optional[BrowserSession] = None
    skills: Optional[SkillSandbox] = None
    outbox: Optional[Outbox] = None
    http: Optional[httpx.AsyncClient] = None
    extracted: list[str] = field(default_factory=list)

    def require_session(self) -> BrowserSession:
        if self.session is None:
            raise TransientExecutionFailure("No browser session available", task_id=self.task_id)
        return self.session

    def require_outbox(self) -> Outbox:
        if self.outbox is None:
            raise TransientExecutionFailure("No outbound service configured", task_id=self.task_id)
        return self.outbox


Handler = Callable[[ExecutionContext, Action, str], Awaitable[dict[str, Any]]]


# ─── Browser handlers ─────────────────────────────────────────────────────────

async def _navigate(ctx: ExecutionContext, action: Action, method: str) -> dict:
    session = ctx.require_session()
    await session.goto(action.params["url"], method=method)
    return {"url": await session.current_url()}


async def _click(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_session().click(action.params["selector"], method=method)
    return {}


async def _fill(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_session().fill(action.params["selector"], str(action.params["value"]), method=method)
    return {}


async def _select(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_session().select(action.params["selector"], str(action.params["value"]), method=method)
    return {}


async def _submit(ctx: ExecutionContext, action: Action, method: str) -> dict:
    session = ctx.require_session()
    await session.submit(action.params.get("selector", ""), method=method)
    return {"url": await session.current_url()}


async def _extract(ctx: ExecutionContext, action: Action, method: str) -> dict:
    text = await ctx.require_session().extract(action.params.get("selector", ""))
    ctx.extracted.append(text)
    return {"text": text[:5000]}


async def _screenshot(ctx: ExecutionContext, action: Action, method: str) -> dict:
    return {"screenshot": await ctx.require_session().screenshot()}


async def _scroll(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_session().scroll(int(action.params.get("pixels", 800)))
    return {}


async def _wait(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_session().wait(float(action.params.get("seconds", 1.0)), action.params.get("selector", ""))
    return {}


async def _browse(ctx: ExecutionContext, action: Action, method: str) -> dict:
    session = ctx.require_session()
    await session.goto(action.params["url"], method=method)
    text = await session.extract(action.params.get("selector", ""))
    ctx.extracted.append(text)
    return {"url": await session.current_url(), "text": text[:5000]}


async def _search(ctx: ExecutionContext, action: Action, method: str) -> dict:
    session = ctx.require_session()
    await session.goto(action.params["query"], method="search")
    text = await session.extract()
    ctx.extracted.append(text)
    return {"query": action.params["query"], "text": text[:5000]}


async def _fill_form(ctx: ExecutionContext, action: Action, method: str) -> dict:
    session = ctx.require_session()
    await session.goto(action.params["url"])
    for selector, value in action.params["fields"].items():
        await session.fill(selector, str(value), method=method)
    if action.params.get("submit", True):
        await session.submit(action.params.get("submit_selector", ""))
    return {"url": await session.current_url(), "fields": len(action.params["fields"])}


async def _login(ctx: ExecutionContext, action: Action, method: str) -> dict:
    session = ctx.require_session()
    await session.goto(action.params["url"])
    if action.params.get("username_selector") and action.params.get("username"):
        await session.fill(action.params["username_selector"], action.params["username"])
    if action.params.get("password_selector") and action.params.get("password"):
        await session.fill(action.params["password_selector"], action.params["password"])
    await session.submit(action.params.get("submit_selector", ""))
    return {"url": await session.current_url()}


async def _upload(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_session().upload(action.params["selector"], action.params["path"])
    return {"uploaded": action.params["path"]}


# ─── Non-browser handlers ─────────────────────────────────────────────────────

async def _send_email(ctx: ExecutionContext, action: Action, method: str) -> dict:
    p = action.params
    await ctx.require_outbox().send_email(ctx.owner_id, p["to"], p["subject"], p["body"])
    return {"sent_to": p["to"]}


async def _schedule(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_outbox().schedule(ctx.owner_id, action.params["when"], action.params["text"])
    return {"scheduled_for": action.params["when"]}


async def _remember(ctx: ExecutionContext, action: Action, method: str) -> dict:
    await ctx.require_outbox().remember(ctx.owner_id, action.params["fact"])
    return {"remembered": True}


async def _api_call(ctx: ExecutionContext, action: Action, method: str) -> dict:
    if ctx.http is None:
        raise TransientExecutionFailure("No HTTP client configured", task_id=ctx.task_id)
    p = action.params
    resp = await ctx.http.request(
        p.get("method", "GET").upper(), p["url"],
        params=p.get("query"), json=p.get("json"), headers=p.get("headers"),
    )
    if resp.status_code >= 400:
        raise TransientExecutionFailure(f"HTTP {resp.status_code} from {p['url']}", task_id=ctx.task_id)
    return {"status": resp.status_code, "text": resp.text[:5000]}


async def _skill(ctx: ExecutionContext, action: Action, method: str) -> dict:
    if ctx.skills is None:
        raise TransientExecutionFailure("No skill sandbox configured", task_id=ctx.task_id)
    result = await ctx.skills.execute_skill(action.params["skill_id"], action.params.get("input", {}))
    if not result.success:
        raise TransientExecutionFailure(result.error or "Skill failed", task_id=ctx.task_id)
    return {"result": result.result}


async def _needs_approval(ctx: ExecutionContext, action: Action, method: str) -> dict:
    raise SecurityRejection(f"'{action.kind.value}' requires explicit user approval", action_kind=action.kind.value)


HANDLERS: dict[ActionKind, Handler] = {
    K.NAVIGATE: _navigate,
    K.CLICK: _click,
    K.FILL: _fill,
    K.SELECT: _select,
    K.SUBMIT: _submit,
    K.EXTRACT: _extract,
    K.SCREENSHOT: _screenshot,
    K.SCROLL: _scroll,
    K.WAIT: _wait,
    K.BROWSE: _browse,
    K.SEARCH: _search,
    K.FILL_FORM: _fill_form,
    K.SEND_EMAIL: _send_email,
    K.SCHEDULE: _schedule,
    K.REMEMBER: _remember,
    K.API_CALL: _api_call,
    K.SKILL: _skill,
    K.LOGIN: _login,
    K.UPLOAD: _upload,
    K.PAYMENT: _needs_approval,
    K.CHECKOUT: _needs_approval,
}

assert set(HANDLERS) == set(ActionKind), "every ActionKind needs a handler"


async def dispatch(ctx: ExecutionContext, action: Action, method: str = "standard") -> dict[str, Any]:
    return await HANDLERS[action.kind](ctx, action, method)
