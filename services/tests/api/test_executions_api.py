"""Tests for cached execution endpoints."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

from httpx import ASGITransport, AsyncClient

from flowdeck.api.app import create_application
from flowdeck.db.models import ExecutionLog
from flowdeck.services.execution_queries import ExecutionFilters

INSTANCE_ID = uuid.uuid4()
CREATED = datetime(2026, 3, 1, 10, 0, tzinfo=UTC)


def _make_app():
    app = create_application()

    from flowdeck.db.session import get_db

    async def override_db():
        return AsyncMock()

    app.dependency_overrides[get_db] = override_db

    return app


async def _get(url: str, **params):
    params.setdefault("instanceId", str(INSTANCE_ID))
    app = _make_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get(url, params=params)


class TestListExecutions:
    @patch("flowdeck.services.execution_queries.list_executions", new_callable=AsyncMock)
    async def test_summary_shape(self, mock_list):
        row_id = uuid.uuid4()
        mock_list.return_value = [
            {
                "id": row_id,
                "instance_id": INSTANCE_ID,
                "execution_id": "1042",
                "workflow_name": "Nightly export",
                "status": "success",
                "created_at": CREATED,
                "last_node_executed": "Write File",
            }
        ]

        response = await _get("/api/executions")

        assert response.status_code == 200
        item = response.json()[0]
        assert item["id"] == str(row_id)
        assert item["created_at"] == CREATED.isoformat()
        assert item["last_node_executed"] == "Write File"
        assert item["execution_data"] is None
        assert item["workflow_data"] is None

    @patch("flowdeck.services.execution_queries.list_executions", new_callable=AsyncMock)
    async def test_filters_are_passed_through(self, mock_list):
        mock_list.return_value = []

        await _get(
            "/api/executions",
            workflowName="Nightly export",
            status="error",
            search="timeout",
            limit="50",
            startDate="2026-03-01T00:00:00Z",
        )

        filters = mock_list.call_args.args[2]
        assert isinstance(filters, ExecutionFilters)
        assert filters.workflow_name == "Nightly export"
        assert filters.status == "error"
        assert filters.search == "timeout"
        assert filters.limit == 50
        assert filters.start_date == datetime(2026, 3, 1, tzinfo=UTC)
        assert filters.end_date is None

    @patch("flowdeck.services.execution_queries.list_executions", new_callable=AsyncMock)
    async def test_empty_filters_are_ignored(self, mock_list):
        mock_list.return_value = []

        await _get("/api/executions", workflowName="", status="")

        filters = mock_list.call_args.args[2]
        assert filters.workflow_name is None
        assert filters.status is None

    async def test_instance_id_required(self):
        app = _make_app()
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/api/executions")

        assert response.status_code == 422


class TestExecutionDetail:
    @patch("flowdeck.services.execution_queries.get_execution", new_callable=AsyncMock)
    async def test_detail_includes_payloads(self, mock_get):
        row_id = uuid.uuid4()
        mock_get.return_value = ExecutionLog(
            id=row_id,
            instance_id=INSTANCE_ID,
            execution_id="1042",
            workflow_id="wf-7",
            workflow_name="Nightly export",
            status="error",
            finished=True,
            error_message="Request timed out",
            execution_data={"lastNodeExecuted": "HTTP Request"},
            workflow_data={"nodes": []},
            created_at=CREATED,
        )

        response = await _get(f"/api/executions/{row_id}/detail")

        assert response.status_code == 200
        body = response.json()
        assert body["execution_data"] == {"lastNodeExecuted": "HTTP Request"}
        assert body["error_message"] == "Request timed out"
        assert mock_get.call_args.args[1:] == (INSTANCE_ID, row_id)

    @patch("flowdeck.services.execution_queries.get_execution", new_callable=AsyncMock)
    async def test_missing_is_404(self, mock_get):
        mock_get.return_value = None

        response = await _get(f"/api/executions/{uuid.uuid4()}/detail")

        assert response.status_code == 404


class TestAggregates:
    @patch("flowdeck.services.execution_queries.get_execution_stats", new_callable=AsyncMock)
    async def test_stats(self, mock_stats):
        mock_stats.return_value = {"totalExecutions": 4, "successRate": 75.0}

        response = await _get("/api/executions/stats")

        assert response.status_code == 200
        assert response.json()["successRate"] == 75.0

    @patch("flowdeck.services.execution_queries.get_daily_stats", new_callable=AsyncMock)
    async def test_daily_defaults_to_fourteen_days(self, mock_daily):
        mock_daily.return_value = []

        response = await _get("/api/executions/daily")

        assert response.status_code == 200
        assert mock_daily.call_args.args[2] == 14

    @patch("flowdeck.services.execution_queries.get_daily_stats", new_callable=AsyncMock)
    async def test_daily_custom_days(self, mock_daily):
        mock_daily.return_value = []

        await _get("/api/executions/daily", days="7")

        assert mock_daily.call_args.args[2] == 7

    @patch("flowdeck.services.execution_queries.get_workflow_stats", new_callable=AsyncMock)
    async def test_workflow_stats(self, mock_workflows):
        mock_workflows.return_value = [{"workflow_name": "Nightly export", "total_executions": 3}]

        response = await _get("/api/executions/workflows")

        assert response.json()[0]["total_executions"] == 3

    @patch("flowdeck.services.execution_queries.list_workflow_names", new_callable=AsyncMock)
    async def test_workflow_names(self, mock_names):
        mock_names.return_value = ["A", "B"]

        response = await _get("/api/workflow-names")

        assert response.json() == ["A", "B"]
