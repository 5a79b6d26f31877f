import pytest
from fastmcp.exceptions import ToolError

from google_tasks import TasksAPIError, TokenExpiredError
from tools import SERVER_NAME, _call, create_mcp_server

pytestmark = pytest.mark.anyio


async def fails_with(error):
    raise error


async def returns(value):
    return value


async def test_call_passes_results_through():
    assert await _call("tasks_list", returns([1, 2])) == [1, 2]


async def test_expired_credential_becomes_tool_error():
    with pytest.raises(ToolError, match="reconnect to authorize again"):
        await _call("tasks_list", fails_with(TokenExpiredError()))


async def test_api_error_becomes_tool_error():
    with pytest.raises(ToolError, match="task_update failed: Task not found"):
        await _call("task_update", fails_with(TasksAPIError("Task not found", status_code=404)))


def test_server_is_named_for_tasks():
    assert create_mcp_server(object()).name == SERVER_NAME
