import inspect
import re
import uuid
from typing import Annotated

import structlog
from fastmcp import Context, FastMCP
from pydantic import Field

from .domain.engine import validate_base_weight
from .domain.errors import DomainError
from .observability.logging import get_logger

# OpenAI function/tool name constraints (used by some MCP clients):
# - Allowed chars: A-Z a-z 0-9 _ -
# - Length capped (historically 64)
_OPENAI_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

CROWDPLAY_TOOL_NAMES: tuple[str, ...] = (
    # Votes
    "vote_submit",
    "vote_get_status",
    "vote_get_last_move",
    "vote_get_history",
    "vote_get_stats",
    "vote_force_advance",
    # Controls
    "controls_list_commands",
    # Boosts
    "boost_grant",
    "boost_list",
)


def create_server(*, engine) -> FastMCP:
    mcp = FastMCP(
        name="crowdplay",
        # Avoid leaking internals by default; our DomainError payload is explicit anyway.
        mask_error_details=True,
    )

    logger = get_logger().bind(component="mcp")

    def _trace_id(ctx: Context | None) -> str:
        rid = getattr(ctx, "request_id", None)
        return rid or str(uuid.uuid4())

    def _ok(*, trace_id: str, data: dict | list | str | int | float | bool | None) -> dict:
        return {"ok": True, "data": data, "error": None, "trace_id": trace_id}

    def _err(*, trace_id: str, error_obj: dict) -> dict:
        return {"ok": False, "data": None, "error": error_obj, "trace_id": trace_id}

    def _call(fn, *, ctx: Context | None = None) -> dict:
        trace_id = _trace_id(ctx) if isinstance(ctx, Context) else _trace_id(None)
        try:
            with structlog.contextvars.bound_contextvars(trace_id=trace_id):
                data = fn()
            return _ok(trace_id=trace_id, data=data)
        except DomainError as e:
            return _err(trace_id=trace_id, error_obj=e.to_error_obj())
        except Exception as e:  # noqa: BLE001
            logger.exception("tool.internal_error", trace_id=trace_id, error=str(e))
            return _err(
                trace_id=trace_id,
                error_obj={"code": "INTERNAL_ERROR", "message": "Internal error"},
            )

    _ENVELOPE_OUTPUT_SCHEMA: dict = {
        "type": "object",
        "properties": {
            "ok": {"type": "boolean"},
            "data": {},
            "error": {"type": ["object", "null"]},
            "trace_id": {"type": "string"},
        },
        "required": ["ok", "data", "error", "trace_id"],
        "additionalProperties": False,
    }

    def _tool(*, name: str, **kwargs):
        # Fail fast if someone adds an incompatible name.
        if not _OPENAI_TOOL_NAME_RE.fullmatch(name):
            raise ValueError(
                f"Invalid MCP tool name: {name!r}. "
                "Tool names must match ^[A-Za-z0-9_-]{1,64}$."
            )
        if name not in CROWDPLAY_TOOL_NAMES:
            raise ValueError(f"MCP tool {name!r} is not listed in CROWDPLAY_TOOL_NAMES.")

        def _decorator(fn):
            # ctx is injected by FastMCP and must not show up in inputSchema.
            tool_kwargs = dict(kwargs)
            try:
                sig = inspect.signature(fn)
                if "ctx" in sig.parameters:
                    tool_kwargs.setdefault("exclude_args", ["ctx"])
            except (TypeError, ValueError):
                pass

            # Older fastmcp versions may not support exclude_args.
            try:
                return mcp.tool(name=name, **tool_kwargs)(fn)
            except TypeError:
                tool_kwargs.pop("exclude_args", None)
                return mcp.tool(name=name, **tool_kwargs)(fn)

        return _decorator

    # -----------------
    # Votes
    # -----------------

    @_tool(
        name="vote_submit",
        description=(
            "Submit a chat message as a vote on behalf of a user (e.g. '!a', '!holdb 1200', '!up75'). "
            "'!release' bypasses voting and releases all inputs immediately."
        ),
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    async def vote_submit(
        text: Annotated[str, Field(description="Raw chat text including the command prefix.", min_length=1)],
        user: Annotated[str, Field(description="Chat username credited with the vote.", min_length=1)],
        base_weight: Annotated[
            float | None,
            Field(description="Optional base vote weight (>= 1). Active boosts apply as max(base, boost)."),
        ] = None,
        ctx: Context | None = None,
    ) -> dict:
        """Normalize and tally one vote; returns whether it was accepted and why."""

        def _run() -> dict:
            if not user.strip():
                raise DomainError(code="INVALID_ARGUMENT", message="user must be a non-empty string.")
            bw = validate_base_weight(base_weight) if base_weight is not None else None
            return engine.submit_vote(text, user.strip(), bw).to_dict()

        return _call(_run, ctx=ctx)

    @_tool(
        name="vote_get_status",
        description="Current window state, live tally, first voters, time remaining and last move.",
        annotations={"readOnlyHint": True},
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    def vote_get_status(ctx: Context | None = None) -> dict:
        """Live voting status for overlays."""
        return _call(engine.status, ctx=ctx)

    @_tool(
        name="vote_get_last_move",
        description="Result of the most recently closed window (null before the first winner).",
        annotations={"readOnlyHint": True},
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    def vote_get_last_move(ctx: Context | None = None) -> dict:
        """Last executed move."""
        return _call(engine.last_move, ctx=ctx)

    @_tool(
        name="vote_get_history",
        description="Most recent executed moves, oldest first.",
        annotations={"readOnlyHint": True},
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    def vote_get_history(
        limit: Annotated[int, Field(description="Maximum number of moves to return.", ge=1, le=1000)] = 10,
        ctx: Context | None = None,
    ) -> dict:
        return _call(lambda: engine.recent_moves(limit=limit), ctx=ctx)

    @_tool(
        name="vote_get_stats",
        description="Aggregate voting stats: total moves, total/average votes, command popularity.",
        annotations={"readOnlyHint": True},
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    def vote_get_stats(ctx: Context | None = None) -> dict:
        return _call(engine.stats, ctx=ctx)

    @_tool(
        name="vote_force_advance",
        description="Operator control: close the collecting window now (dispatching its winner, if any).",
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    async def vote_force_advance(ctx: Context | None = None) -> dict:
        """Force the current window to close."""
        return _call(engine.force_advance, ctx=ctx)

    # -----------------
    # Controls
    # -----------------

    @_tool(
        name="controls_list_commands",
        description="List action keys, aliases, votable keys, hold/momentum settings and examples.",
        annotations={"readOnlyHint": True},
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    def controls_list_commands(ctx: Context | None = None) -> dict:
        return _call(engine.list_commands, ctx=ctx)

    # -----------------
    # Boosts
    # -----------------

    @_tool(
        name="boost_grant",
        description="Grant a user a temporary vote weight. Replaces any current boost for that user.",
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    async def boost_grant(
        user: Annotated[str, Field(description="Chat username.", min_length=1)],
        weight: Annotated[float | None, Field(description="Boost weight (>= 1). Defaults to boosts.default_weight.")] = None,
        duration_ms: Annotated[
            int | None,
            Field(description="Boost lifetime in ms. Defaults to boosts.default_duration_ms.", ge=1),
        ] = None,
        ctx: Context | None = None,
    ) -> dict:
        return _call(lambda: engine.grant_boost(user=user.strip(), weight=weight, duration_ms=duration_ms), ctx=ctx)

    @_tool(
        name="boost_list",
        description="List active boosts with remaining lifetime.",
        annotations={"readOnlyHint": True},
        output_schema=_ENVELOPE_OUTPUT_SCHEMA,
    )
    def boost_list(ctx: Context | None = None) -> dict:
        return _call(engine.active_boosts, ctx=ctx)

    return mcp
