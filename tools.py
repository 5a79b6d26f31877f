"""MCP Tools for tasks-oauth-proxy.

Each MCP session gets its own FastMCP instance whose tools call that
session's TasksService, so one user's credential never serves another's
requests.
"""

import logging
from typing import Literal, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from google_tasks import DEFAULT_LIST_ID, TasksAPIError, TasksService, TokenExpiredError

logger = logging.getLogger(__name__)

SERVER_NAME = "google-tasks-mcp"
TOOL_NAMES = ("tasklists_list", "tasks_list", "task_create", "task_update", "task_delete")


async def _call(tool: str, operation):
    """Await a service call, turning API failures into tool errors."""
    try:
        return await operation
    except TokenExpiredError as e:
        logger.info(f"[TOOL] {tool} failed: credential expired")
        raise ToolError(str(e)) from e
    except TasksAPIError as e:
        logger.info(f"[TOOL] {tool} failed: {e}")
        raise ToolError(f"{tool} failed: {e}") from e


def create_mcp_server(service: TasksService) -> FastMCP:
    """Build the MCP server bound to one session's Tasks client."""
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool(name="tasklists_list", annotations={"readOnlyHint": True, "openWorldHint": True})
    async def tasklists_list() -> dict:
        """Returns all Google Tasks task lists for the authenticated user."""
        lists = await _call("tasklists_list", service.list_task_lists())
        logger.info(f"[TOOL] tasklists_list returned {len(lists)} lists")
        return {"taskLists": lists}

    @mcp.tool(name="tasks_list", annotations={"readOnlyHint": True, "openWorldHint": True})
    async def tasks_list(listId: str = DEFAULT_LIST_ID, showCompleted: bool = True) -> dict:
        """Returns the tasks in a Google Tasks list (the default list if listId is omitted)."""
        tasks = await _call("tasks_list", service.list_tasks(listId, show_completed=showCompleted))
        logger.info(f"[TOOL] tasks_list returned {len(tasks)} tasks")
        return {"tasks": tasks}

    @mcp.tool(
        name="task_create",
        annotations={"readOnlyHint": False, "destructiveHint": False, "openWorldHint": True},
    )
    async def task_create(
        title: str,
        notes: Optional[str] = None,
        due: Optional[str] = None,
        listId: str = DEFAULT_LIST_ID,
    ) -> dict:
        """Creates a task. due must be RFC 3339, e.g. 2024-12-31T23:59:59Z."""
        task = await _call("task_create", service.create_task(title, notes=notes, due=due, list_id=listId))
        return {"task": task}

    @mcp.tool(
        name="task_update",
        annotations={"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True, "openWorldHint": True},
    )
    async def task_update(
        taskId: str,
        listId: str = DEFAULT_LIST_ID,
        title: Optional[str] = None,
        notes: Optional[str] = None,
        due: Optional[str] = None,
        status: Optional[Literal["needsAction", "completed"]] = None,
    ) -> dict:
        """Updates a task. Only the fields provided are changed."""
        task = await _call(
            "task_update",
            service.update_task(taskId, list_id=listId, title=title, notes=notes, due=due, status=status),
        )
        return {"task": task}

    @mcp.tool(
        name="task_delete",
        annotations={"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True, "openWorldHint": True},
    )
    async def task_delete(taskId: str, listId: str = DEFAULT_LIST_ID) -> dict:
        """Permanently deletes a task."""
        await _call("task_delete", service.delete_task(taskId, list_id=listId))
        return {"deleted": True, "taskId": taskId}

    return mcp
