"""MCP server exposing the comment store to the agent.

Exposes comment operations as MCP tools with structured JSON I/O. The
server is built around one injected store and one delivery queue; every
tool returns either a JSON payload or ``{"error": {"code", "message"}}``.

All comments are also published as the ``cowrite://comments`` resource.
While a client is connected, store changes are pushed to it as resource
and tool-list notifications plus a warning log line per new comment.
"""

import asyncio
import json
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from mcp.server import NotificationOptions, Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server
from mcp.types import GetPromptResult, Prompt, PromptMessage, Resource, TextContent, Tool
from pydantic import AnyUrl, BaseModel, ConfigDict, Field, ValidationError

from cowrite import __version__
from cowrite.anchors import annotate_content
from cowrite.delivery import CommentDelivery, DeliveryKind, WaitResult
from cowrite.events import StoreEvent
from cowrite.logger import get_logger
from cowrite.models import Comment, CommentStatus
from cowrite.store import (
    CommentNotFound,
    CommentStore,
    InvalidTarget,
    InvalidTransition,
    ProposalNotFound,
)
from cowrite.storage import normalize_path

# ============================================================================
# Error Models
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error response for MCP tools."""

    code: str = Field(..., description="Error code (COMMENT_NOT_FOUND, READ_ERROR, etc.)")
    message: str = Field(..., description="Human-readable error message")


# ============================================================================
# Request Models
# ============================================================================


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ListCommentsRequest(_Request):
    """Request model for get_pending_comments tool."""

    file: str | None = Field(default=None, description="Filter by file path")
    status: str = Field(default="pending", pattern=r"^(pending|answered|resolved|all)$")


class AddCommentRequest(_Request):
    """Request model for add_comment tool."""

    file: str = Field(..., min_length=1)
    offset: int = Field(default=0, ge=0)
    length: int = Field(default=0, ge=0)
    selected_text: str = Field(default="", alias="selectedText")
    comment: str = Field(..., min_length=1)


class ReplyRequest(_Request):
    """Request model for reply_to_comment tool."""

    comment_id: str = Field(..., min_length=1, alias="commentId")
    reply: str = Field(..., min_length=1)


class ProposeChangeRequest(_Request):
    """Request model for propose_change tool."""

    comment_id: str = Field(..., min_length=1, alias="commentId")
    new_text: str = Field(..., min_length=1, alias="newText")
    explanation: str = Field(default="")


class CommentIdRequest(_Request):
    """Request model for resolve/reopen/delete tools."""

    comment_id: str = Field(..., min_length=1, alias="commentId")


class WaitRequest(_Request):
    """Request model for wait_for_comment tool."""

    timeout: float | None = Field(default=None, gt=0, le=3600, description="Max seconds to wait")


class AnnotatedFileRequest(_Request):
    """Request model for get_file_with_annotations tool."""

    file: str = Field(..., min_length=1)


WORKFLOW_PROMPT = "\n".join(
    [
        "You are monitoring a live preview where the user leaves comments on selected text.",
        "",
        "Comment lifecycle: pending -> answered (automatic on your reply) -> resolved (user only).",
        "If the user disagrees with your answer, they reply back and it returns to pending.",
        "",
        "Follow this loop:",
        "1. Call `get_pending_comments` to check for any comments already posted.",
        "2. Process each pending comment: read the file, make the requested change, then call",
        "   `reply_to_comment` to explain what you did. Use `propose_change` instead when the user",
        "   should approve the new text before it is written.",
        "3. Call `wait_for_comment` to block until the next comment (or follow-up) arrives.",
        "4. When a comment arrives, process it the same way (step 2).",
        "5. Go back to step 3 and keep listening.",
        "",
        "Tips:",
        "- Use `get_file_with_annotations` to see comments in context within the file.",
        "- Do NOT resolve comments; the user does that after reviewing your work.",
    ]
)


# ============================================================================
# Tool handlers
# ============================================================================


def _text(payload: Any) -> list[TextContent]:
    if isinstance(payload, str):
        return [TextContent(type="text", text=payload)]
    return [TextContent(type="text", text=json.dumps(payload, indent=2, ensure_ascii=False))]


def _error(code: str, message: str) -> list[TextContent]:
    error = ErrorResponse(code=code, message=message)
    return _text({"error": error.model_dump()})


def _error_for(exc: Exception) -> list[TextContent]:
    """Map store exceptions to error payloads."""
    if isinstance(exc, ProposalNotFound):
        return _error("PROPOSAL_NOT_FOUND", str(exc))
    if isinstance(exc, CommentNotFound):
        return _error("COMMENT_NOT_FOUND", str(exc))
    if isinstance(exc, InvalidTarget):
        return _error("UNSUPPORTED_FOR_FILE_COMMENT", str(exc))
    if isinstance(exc, InvalidTransition):
        return _error("INVALID_TRANSITION", str(exc))
    return _error("INTERNAL_ERROR", str(exc))


COMMENTS_URI = "cowrite://comments"


def comment_alert(prefix: str, comment: Comment, file: str) -> str:
    """Log line announcing a comment to the agent."""
    selected = ""
    if comment.selected_text:
        preview = comment.selected_text[:80]
        if len(comment.selected_text) > 80:
            preview += "..."
        selected = f' (selected: "{preview}")'
    return f'{prefix} on {file}: "{comment.comment}"{selected}. Call get_pending_comments to see it.'


# ============================================================================
# Notifications
# ============================================================================


class SessionNotifier:
    """Pushes store events to the connected MCP session.

    Store events may fire on watcher threads; sends are scheduled onto the
    session's event loop. Nothing is sent while no session is attached and
    delivery failures are only logged at debug level.
    """

    def __init__(self, store: CommentStore, describe_file: Callable[[Comment], str]) -> None:
        self.store = store
        self.describe_file = describe_file
        self._session: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def connected(self) -> bool:
        return self._session is not None

    def attach(self, session: Any, loop: asyncio.AbstractEventLoop) -> None:
        self._session = session
        self._loop = loop

    def detach(self) -> None:
        self._session = None
        self._loop = None

    def subscribe(self) -> None:
        """Register store listeners; calling again is a no-op."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.store.on(StoreEvent.CHANGE, self._on_change),
            self.store.on(StoreEvent.NEW_COMMENT, lambda c: self._on_comment("NEW COMMENT", c)),
            self.store.on(StoreEvent.COMMENT_REOPENED, lambda c: self._on_comment("COMMENT REOPENED", c)),
        ]

    def unsubscribe(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_change(self, _payload: Any) -> None:
        async def send(session: Any) -> None:
            await session.send_resource_updated(AnyUrl(COMMENTS_URI))

        self._send(send)

    def _on_comment(self, prefix: str, comment: Comment | None) -> None:
        if comment is None:
            return
        message = comment_alert(prefix, comment, self.describe_file(comment))

        async def send(session: Any) -> None:
            # Description of get_pending_comments carries the pending count
            await session.send_tool_list_changed()
            await session.send_log_message(level="warning", data=message, logger="cowrite")
            await session.send_resource_list_changed()

        self._send(send)

    def _send(self, make: Callable[[Any], Coroutine[Any, Any, None]]) -> None:
        session, loop = self._session, self._loop
        if session is None or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            future = loop.create_task(make(session))
        else:
            future = asyncio.run_coroutine_threadsafe(make(session), loop)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: Any) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            get_logger().debug("Notification not delivered", error=str(exc))


class CommentTools:
    """Tool implementations bound to one store and one delivery queue.

    Args:
        store: Comment store shared with the preview and watchers
        delivery: Delivery bookkeeping for the connected agent
        project_dir: Root used to resolve relative file arguments
        cancel: Optional event that ends blocked waits (set on shutdown)
    """

    def __init__(
        self,
        store: CommentStore,
        delivery: CommentDelivery,
        project_dir: Path,
        cancel: asyncio.Event | None = None,
    ) -> None:
        self.store = store
        self.delivery = delivery
        self.project_dir = project_dir.resolve()
        self.cancel = cancel
        self.notifier = SessionNotifier(store, lambda c: self.comment_payload(c)["file"])

    def _resolve_file(self, file: str) -> str:
        return str(normalize_path(Path(file), self.project_dir))

    def comment_payload(self, comment: Comment) -> dict[str, Any]:
        """Comment as JSON with ``file`` relative to the project directory."""
        data = comment.to_json_dict()
        try:
            data["file"] = Path(comment.file).relative_to(self.project_dir).as_posix()
        except ValueError:
            pass
        return data

    def pending_count(self) -> int:
        return self.store.count(CommentStatus.PENDING)

    async def handle_get_pending_comments(self, arguments: Any) -> list[TextContent]:
        """Handle get_pending_comments tool call."""
        try:
            req = ListCommentsRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        file = None
        if req.file:
            try:
                file = self._resolve_file(req.file)
            except ValueError as e:
                return _error("INVALID_PATH", str(e))

        comments = self.store.get_all(file=file, status=req.status)
        if not comments:
            return _text("No comments found.")
        return _text([self.comment_payload(c) for c in comments])

    async def handle_add_comment(self, arguments: Any) -> list[TextContent]:
        """Handle add_comment tool call."""
        try:
            req = AddCommentRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        try:
            file = self._resolve_file(req.file)
        except ValueError as e:
            return _error("INVALID_PATH", str(e))

        comment = self.store.add(file, req.offset, req.length, req.selected_text, req.comment)
        return _text(self.comment_payload(comment))

    async def handle_reply_to_comment(self, arguments: Any) -> list[TextContent]:
        """Handle reply_to_comment tool call."""
        try:
            req = ReplyRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        try:
            reply = self.store.add_reply(req.comment_id, "agent", req.reply)
        except CommentNotFound as e:
            return _error_for(e)

        return _text({"commentId": req.comment_id, "reply": reply.to_json_dict()})

    async def handle_propose_change(self, arguments: Any) -> list[TextContent]:
        """Handle propose_change tool call."""
        try:
            req = ProposeChangeRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        try:
            reply = self.store.add_proposal_reply(req.comment_id, req.new_text, req.explanation)
        except (CommentNotFound, InvalidTarget) as e:
            return _error_for(e)

        return _text({"commentId": req.comment_id, "reply": reply.to_json_dict()})

    async def handle_resolve_comment(self, arguments: Any) -> list[TextContent]:
        """Handle resolve_comment tool call."""
        try:
            req = CommentIdRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        try:
            comment = self.store.resolve(req.comment_id)
        except CommentNotFound as e:
            return _error_for(e)
        return _text(self.comment_payload(comment))

    async def handle_reopen_comment(self, arguments: Any) -> list[TextContent]:
        """Handle reopen_comment tool call."""
        try:
            req = CommentIdRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        try:
            comment = self.store.reopen(req.comment_id)
        except (CommentNotFound, InvalidTransition) as e:
            return _error_for(e)
        return _text(self.comment_payload(comment))

    async def handle_delete_comment(self, arguments: Any) -> list[TextContent]:
        """Handle delete_comment tool call."""
        try:
            req = CommentIdRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        if not self.store.delete(req.comment_id):
            return _error_for(CommentNotFound(req.comment_id))
        return _text({"commentId": req.comment_id, "deleted": True})

    def wait_payload(self, result: WaitResult) -> dict[str, Any] | str:
        if result.kind == DeliveryKind.TIMEOUT:
            if result.pending_count > 0:
                return (
                    f"Timeout, but {result.pending_count} pending comment(s) exist. "
                    "Call get_pending_comments now."
                )
            return "No new comments yet. Call wait_for_comment again to keep listening."
        if result.kind == DeliveryKind.CANCELLED:
            return "Cancelled. Call wait_for_comment again to resume listening."

        payload: dict[str, Any] = {"event": result.kind.value, "comment": self.comment_payload(result.comment)}
        if result.follow_up is not None:
            payload["followUp"] = result.follow_up
        return payload

    async def handle_wait_for_comment(self, arguments: Any) -> list[TextContent]:
        """Handle wait_for_comment tool call."""
        try:
            req = WaitRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        result = await self.delivery.wait_for_comment(timeout=req.timeout, cancel=self.cancel)
        return _text(self.wait_payload(result))

    async def handle_get_file_with_annotations(self, arguments: Any) -> list[TextContent]:
        """Handle get_file_with_annotations tool call."""
        try:
            req = AnnotatedFileRequest(**(arguments or {}))
        except ValidationError as e:
            return _error("VALIDATION_ERROR", f"Invalid input: {e}")

        try:
            file = self._resolve_file(req.file)
        except ValueError as e:
            return _error("INVALID_PATH", str(e))

        try:
            content = Path(file).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return _error("READ_ERROR", f"Error reading file: {e}")

        return _text(annotate_content(content, self.store.get_for_file(file)))

    def tool_definitions(self) -> list[Tool]:
        """Tool list; the listing tool's description carries the live pending count."""
        comment_id = {"commentId": {"type": "string", "description": "The comment ID"}}
        return [
            Tool(
                name="get_pending_comments",
                description=(
                    f"Get comments from the live preview ({self.pending_count()} pending). "
                    "Call this first to catch comments posted before you started listening."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "file": {"type": "string", "description": "Filter by file path"},
                        "status": {
                            "type": "string",
                            "description": "Filter by status (default: pending)",
                            "enum": ["pending", "answered", "resolved", "all"],
                        },
                    },
                },
            ),
            Tool(
                name="add_comment",
                description="Leave a comment on a span of a file (omit selectedText for a whole-file comment)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "file": {"type": "string", "description": "Path to the file"},
                        "offset": {"type": "integer", "minimum": 0},
                        "length": {"type": "integer", "minimum": 0},
                        "selectedText": {"type": "string", "description": "Exact text being commented on"},
                        "comment": {"type": "string", "minLength": 1},
                    },
                    "required": ["file", "comment"],
                },
            ),
            Tool(
                name="reply_to_comment",
                description=(
                    "Reply to a comment as the agent. Your reply automatically marks the comment as "
                    "'answered'. The user reviews it and can resolve or reply back."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        **comment_id,
                        "reply": {"type": "string", "description": "The reply text", "minLength": 1},
                    },
                    "required": ["commentId", "reply"],
                },
            ),
            Tool(
                name="propose_change",
                description=(
                    "Propose replacement text for the commented selection. The user applies or rejects "
                    "it. Not available for whole-file comments."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        **comment_id,
                        "newText": {"type": "string", "description": "Replacement for the selected text"},
                        "explanation": {"type": "string", "description": "Why this change"},
                    },
                    "required": ["commentId", "newText"],
                },
            ),
            Tool(
                name="resolve_comment",
                description="Mark a comment as resolved",
                inputSchema={"type": "object", "properties": comment_id, "required": ["commentId"]},
            ),
            Tool(
                name="reopen_comment",
                description="Reopen a resolved comment",
                inputSchema={"type": "object", "properties": comment_id, "required": ["commentId"]},
            ),
            Tool(
                name="delete_comment",
                description="Delete a comment permanently",
                inputSchema={"type": "object", "properties": comment_id, "required": ["commentId"]},
            ),
            Tool(
                name="wait_for_comment",
                description=(
                    "Block until a new comment (or a user follow-up) is posted, then return it. Call it "
                    "again immediately after handling each comment to keep listening. If it times out, "
                    "call it again."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "timeout": {
                            "type": "number",
                            "description": f"Max seconds to wait (default: {self.delivery.default_timeout:g})",
                        },
                    },
                },
            ),
            Tool(
                name="get_file_with_annotations",
                description="Get file content with inline comment markers showing where comments are anchored.",
                inputSchema={
                    "type": "object",
                    "properties": {"file": {"type": "string", "description": "File path to annotate"}},
                    "required": ["file"],
                },
            ),
        ]

    async def dispatch(self, name: str, arguments: Any) -> list[TextContent]:
        """Route a tool call to its handler."""
        handlers = {
            "get_pending_comments": self.handle_get_pending_comments,
            "add_comment": self.handle_add_comment,
            "reply_to_comment": self.handle_reply_to_comment,
            "propose_change": self.handle_propose_change,
            "resolve_comment": self.handle_resolve_comment,
            "reopen_comment": self.handle_reopen_comment,
            "delete_comment": self.handle_delete_comment,
            "wait_for_comment": self.handle_wait_for_comment,
            "get_file_with_annotations": self.handle_get_file_with_annotations,
        }
        handler = handlers.get(name)
        if handler is None:
            return _error("UNKNOWN_TOOL", f"Unknown tool: {name}")

        try:
            return await handler(arguments)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Catch-all for unexpected errors
            get_logger().exception(f"Tool {name} failed", e)
            return _error("INTERNAL_ERROR", str(e))


# ============================================================================
# MCP Server
# ============================================================================


def create_server(tools: CommentTools) -> Server:
    """Build an MCP server whose handlers call into ``tools``.

    Every request attaches the requesting session to ``tools.notifier`` so
    store events reach the client as notifications.
    """
    server = Server("cowrite", version=__version__)
    tools.notifier.subscribe()

    def track_session() -> None:
        try:
            ctx = server.request_context
        except LookupError:
            return
        tools.notifier.attach(ctx.session, asyncio.get_running_loop())

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List all available MCP tools."""
        track_session()
        return tools.tool_definitions()

    @server.call_tool()
    async def call_tool(name: str, arguments: Any) -> list[TextContent]:
        """Handle MCP tool calls."""
        track_session()
        return await tools.dispatch(name, arguments)

    @server.list_resources()
    async def list_resources() -> list[Resource]:
        track_session()
        return [
            Resource(
                uri=AnyUrl(COMMENTS_URI),
                name="all-comments",
                description="Live list of all comments",
                mimeType="application/json",
            )
        ]

    @server.read_resource()
    async def read_resource(uri: AnyUrl) -> list[ReadResourceContents]:
        track_session()
        if str(uri).rstrip("/") != COMMENTS_URI:
            raise ValueError(f"Unknown resource: {uri}")
        data = [tools.comment_payload(c) for c in tools.store.get_all()]
        return [
            ReadResourceContents(
                content=json.dumps(data, indent=2, ensure_ascii=False),
                mime_type="application/json",
            )
        ]

    @server.list_prompts()
    async def list_prompts() -> list[Prompt]:
        track_session()
        return [
            Prompt(
                name="cowrite-workflow",
                description="How to process live preview comments in a wait-handle-reply loop",
            )
        ]

    @server.get_prompt()
    async def get_prompt(name: str, arguments: dict[str, str] | None) -> GetPromptResult:
        track_session()
        if name != "cowrite-workflow":
            raise ValueError(f"Unknown prompt: {name}")
        return GetPromptResult(
            description="How to process live preview comments in a wait-handle-reply loop",
            messages=[PromptMessage(role="user", content=TextContent(type="text", text=WORKFLOW_PROMPT))],
        )

    return server


async def serve_stdio(server: Server, notifier: SessionNotifier | None = None) -> None:
    """Run ``server`` on stdin/stdout until the client disconnects."""
    options = server.create_initialization_options(
        notification_options=NotificationOptions(tools_changed=True, resources_changed=True),
    )
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, options)
    finally:
        if notifier is not None:
            notifier.detach()
            notifier.unsubscribe()
