from __future__ import annotations

from typing import Any

import httpx


class JobClient:
    def __init__(self, base_url: str, worker_id: str, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.headers = {"X-Worker-Id": worker_id}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=10.0, transport=self._transport)

    async def lease_job(self) -> dict[str, Any] | None:
        """Lease the next ready job, or return ``None`` when the queue is idle."""
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/jobs/lease",
                json={"worker_id": self.worker_id},
                headers=self.headers,
            )
            if response.status_code == httpx.codes.NO_CONTENT:
                return None
            response.raise_for_status()
            return response.json()

    async def complete_job(
        self,
        job_id: str,
        *,
        observations: list[dict[str, Any]],
        result: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/jobs/{job_id}/complete",
                json={"observations": observations, "result": result or {}},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def fail_job(self, job_id: str, *, error: str, retry: bool) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/jobs/{job_id}/fail",
                json={"error": error[:4000], "retry": retry},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def run_schedule_tick(self) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/jobs/schedule", headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def recover_stuck_jobs(self) -> int:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/jobs/recovery",
                json={"action": "recover_stuck_running_jobs"},
                headers=self.headers,
            )
            response.raise_for_status()
            payload = response.json()
            return int(payload.get("affected", 0))
