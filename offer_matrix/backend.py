"""Extraction backend client.

The backend owns offer rows, extraction jobs and share links. Two
implementations share one async interface:

    HttpOfferBackend      production; REST API over httpx.AsyncClient
    InMemoryOfferBackend  dev/testing; same semantics, no network

Writes raise PersistenceError on any failure. Reads raise httpx errors,
which background callers log and retry on their next tick.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from .errors import PersistenceError
from .models import (
    Job,
    OfferGroup,
    Program,
    ShareLink,
    ShareRole,
    ShareView,
    ViewPreferences,
)
from .prefs import from_snapshot, to_snapshot

logger = logging.getLogger("offer_matrix.backend")


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class OfferBackend(ABC):
    """Async interface to the extraction backend."""

    @abstractmethod
    async def list_offers_by_documents(self, document_ids: Sequence[str]) -> list[OfferGroup]:
        """Offer groups for the given source documents."""
        ...

    @abstractmethod
    async def list_offers_by_job(self, job_id: str) -> list[OfferGroup]:
        """Offer groups produced so far by an extraction job."""
        ...

    @abstractmethod
    async def fetch_job(self, job_id: str) -> Job:
        """Progress of an extraction job."""
        ...

    @abstractmethod
    async def patch_offer(self, row_id: int, diff: dict[str, Any]) -> None:
        """Persist changed fields of one offer row."""
        ...

    @abstractmethod
    async def delete_offer(self, row_id: int) -> None:
        """Delete one offer row."""
        ...

    @abstractmethod
    async def create_share(
        self,
        document_ids: Sequence[str],
        view_prefs: ViewPreferences,
        *,
        editable: bool = False,
        role: ShareRole = ShareRole.BROKER,
        insurer_only: str | None = None,
        allow_edit_fields: Sequence[str] = (),
        expires_in_hours: int | None = None,
        title: str | None = None,
    ) -> ShareLink:
        """Create a share link over the given documents."""
        ...

    @abstractmethod
    async def fetch_share(self, token: str) -> ShareView | None:
        """Resolve a share token, or None if missing/expired."""
        ...

    @abstractmethod
    async def regenerate_share(self, token: str, view_prefs: ViewPreferences) -> None:
        """Refresh the persisted view of a mutable share."""
        ...

    async def resolve_column_row_id(
        self,
        source_file: str,
        insurer: str | None,
        program_code: str | None,
    ) -> int | None:
        """Find the backend row id for a (source file, insurer, program code) triple.

        Fetches only that document and matches on insurer + program code.
        Any failure means "not resolved yet".
        """
        try:
            groups = await self.list_offers_by_documents([source_file])
        except Exception as e:
            logger.warning("Row id lookup for %s failed: %s", source_file, e)
            return None

        group = next((g for g in groups if g.source_file == source_file), None)
        if group is None:
            return None
        for program in group.programs:
            if (program.insurer or "") == (insurer or "") and (
                program.program_code or ""
            ) == (program_code or ""):
                return program.backend_id
        return None

    async def aclose(self) -> None:
        """Release network resources."""


# ---------------------------------------------------------------------------
# HTTP implementation (production)
# ---------------------------------------------------------------------------


class HttpOfferBackend(OfferBackend):
    """REST client for the extraction backend."""

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )
        logger.info("HttpOfferBackend: initialized with %s", base_url)

    async def _get_json(self, path: str) -> Any:
        resp = await self._client.get(path)
        resp.raise_for_status()
        return resp.json()

    async def _write(self, method: str, path: str, *, json_data: Any = None) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=json_data)
        except httpx.HTTPError as e:
            logger.error("HttpOfferBackend: %s %s failed: %s", method, path, e)
            raise PersistenceError(f"{method} {path} failed: {e}") from e
        if resp.is_success:
            return resp
        logger.error(
            "HttpOfferBackend: %s %s failed (%s): %s",
            method,
            path,
            resp.status_code,
            resp.text,
        )
        raise PersistenceError(resp.text or resp.reason_phrase, status_code=resp.status_code)

    async def list_offers_by_documents(self, document_ids: Sequence[str]) -> list[OfferGroup]:
        resp = await self._client.post(
            "/offers/by-documents", json={"document_ids": list(document_ids)}
        )
        resp.raise_for_status()
        return [OfferGroup.model_validate(g) for g in resp.json()]

    async def list_offers_by_job(self, job_id: str) -> list[OfferGroup]:
        data = await self._get_json(f"/offers/by-job/{quote(job_id, safe='')}")
        return [OfferGroup.model_validate(g) for g in data]

    async def fetch_job(self, job_id: str) -> Job:
        return Job.model_validate(await self._get_json(f"/jobs/{quote(job_id, safe='')}"))

    async def patch_offer(self, row_id: int, diff: dict[str, Any]) -> None:
        await self._write("PATCH", f"/offers/{row_id}", json_data=diff)
        logger.info("HttpOfferBackend: patched offer %s (%s)", row_id, ", ".join(sorted(diff)))

    async def delete_offer(self, row_id: int) -> None:
        await self._write("DELETE", f"/offers/{row_id}")
        logger.info("HttpOfferBackend: deleted offer %s", row_id)

    async def create_share(
        self,
        document_ids: Sequence[str],
        view_prefs: ViewPreferences,
        *,
        editable: bool = False,
        role: ShareRole = ShareRole.BROKER,
        insurer_only: str | None = None,
        allow_edit_fields: Sequence[str] = (),
        expires_in_hours: int | None = None,
        title: str | None = None,
    ) -> ShareLink:
        payload = {
            "title": title,
            "document_ids": list(document_ids),
            "expires_in_hours": expires_in_hours,
            "insurer_only": insurer_only,
            "editable": editable,
            "role": role.value,
            "allow_edit_fields": list(allow_edit_fields),
            "view_prefs": to_snapshot(view_prefs),
        }
        resp = await self._write("POST", "/shares", json_data=payload)
        return ShareLink.model_validate(resp.json())

    async def fetch_share(self, token: str) -> ShareView | None:
        resp = await self._client.get(f"/shares/{quote(token, safe='')}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        data = resp.json()
        payload = data.get("payload") or {}
        return ShareView(
            token=data.get("token", token),
            offers=[OfferGroup.model_validate(g) for g in data.get("offers") or []],
            view_prefs=from_snapshot(data.get("view_prefs")),
            editable=bool(payload.get("editable", False)),
            title=payload.get("title"),
            company_name=payload.get("company_name"),
            employees_count=payload.get("employees_count"),
        )

    async def regenerate_share(self, token: str, view_prefs: ViewPreferences) -> None:
        await self._write(
            "POST",
            f"/shares/{quote(token, safe='')}/regenerate",
            json_data={"view_prefs": to_snapshot(view_prefs)},
        )

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# In-memory implementation (dev/testing)
# ---------------------------------------------------------------------------


class InMemoryOfferBackend(OfferBackend):
    """Ephemeral backend holding offer groups, jobs and shares in dicts."""

    def __init__(self, share_base_url: str = "http://localhost:8080") -> None:
        self._groups: dict[str, OfferGroup] = {}
        self._jobs: dict[str, tuple[Job, list[str]]] = {}
        self._shares: dict[str, dict[str, Any]] = {}
        self._next_row_id = 1
        self._share_base_url = share_base_url.rstrip("/")

    # ----- seeding -----

    def add_group(self, group: OfferGroup) -> OfferGroup:
        """Store a group, assigning row ids to programs that lack one."""
        programs = []
        for program in group.programs:
            if program.backend_id is None:
                program = program.model_copy(update={"row_id": self._next_row_id})
                self._next_row_id += 1
            else:
                self._next_row_id = max(self._next_row_id, program.backend_id + 1)
            programs.append(program)
        stored = group.model_copy(update={"programs": programs}, deep=True)
        self._groups[group.source_file] = stored
        return stored

    def add_job(self, job_id: str, document_ids: Sequence[str], job: Job | None = None) -> None:
        self._jobs[job_id] = (job or Job(total=len(document_ids)), list(document_ids))

    def set_job_progress(self, job_id: str, done: int) -> None:
        job, docs = self._jobs[job_id]
        self._jobs[job_id] = (job.model_copy(update={"done": done}), docs)

    def _find(self, row_id: int) -> tuple[OfferGroup, int]:
        for group in self._groups.values():
            for i, program in enumerate(group.programs):
                if program.backend_id == row_id:
                    return group, i
        raise PersistenceError(f"Offer {row_id} not found", status_code=404)

    # ----- reads -----

    async def list_offers_by_documents(self, document_ids: Sequence[str]) -> list[OfferGroup]:
        await asyncio.sleep(0)
        return [
            self._groups[d].model_copy(deep=True) for d in document_ids if d in self._groups
        ]

    async def list_offers_by_job(self, job_id: str) -> list[OfferGroup]:
        _, docs = self._jobs.get(job_id, (None, []))
        return await self.list_offers_by_documents(docs)

    async def fetch_job(self, job_id: str) -> Job:
        await asyncio.sleep(0)
        if job_id not in self._jobs:
            raise httpx.HTTPStatusError(
                f"Job {job_id} not found",
                request=httpx.Request("GET", f"/jobs/{job_id}"),
                response=httpx.Response(404),
            )
        return self._jobs[job_id][0].model_copy()

    # ----- writes -----

    async def patch_offer(self, row_id: int, diff: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        group, index = self._find(row_id)
        program: Program = group.programs[index]
        group.programs[index] = program.model_copy(update=dict(diff), deep=True)
        logger.info("InMemoryOfferBackend: patched offer %s", row_id)

    async def delete_offer(self, row_id: int) -> None:
        await asyncio.sleep(0)
        group, index = self._find(row_id)
        del group.programs[index]
        logger.info("InMemoryOfferBackend: deleted offer %s", row_id)

    async def create_share(
        self,
        document_ids: Sequence[str],
        view_prefs: ViewPreferences,
        *,
        editable: bool = False,
        role: ShareRole = ShareRole.BROKER,
        insurer_only: str | None = None,
        allow_edit_fields: Sequence[str] = (),
        expires_in_hours: int | None = None,
        title: str | None = None,
    ) -> ShareLink:
        await asyncio.sleep(0)
        token = uuid.uuid4().hex
        expires_at = (
            (datetime.now(UTC) + timedelta(hours=expires_in_hours)).isoformat()
            if expires_in_hours and expires_in_hours > 0
            else None
        )
        self._shares[token] = {
            "document_ids": list(document_ids),
            "view_prefs": to_snapshot(view_prefs),
            "editable": editable,
            "role": role,
            "insurer_only": insurer_only,
            "allow_edit_fields": list(allow_edit_fields),
            "expires_at": expires_at,
            "title": title,
        }
        return ShareLink(
            token=token,
            url=f"{self._share_base_url}/share/{token}",
            title=title,
            expires_at=expires_at,
        )

    async def fetch_share(self, token: str) -> ShareView | None:
        share = self._shares.get(token)
        if share is None:
            return None
        expires_at = share["expires_at"]
        if expires_at and datetime.fromisoformat(expires_at) < datetime.now(UTC):
            return None
        groups = await self.list_offers_by_documents(share["document_ids"])
        if share["insurer_only"]:
            groups = [
                g.model_copy(
                    update={
                        "programs": [
                            p for p in g.programs if p.insurer == share["insurer_only"]
                        ]
                    }
                )
                for g in groups
            ]
        return ShareView(
            token=token,
            offers=groups,
            view_prefs=from_snapshot(share["view_prefs"]),
            editable=share["editable"],
            title=share["title"],
        )

    async def regenerate_share(self, token: str, view_prefs: ViewPreferences) -> None:
        await asyncio.sleep(0)
        if token not in self._shares:
            raise PersistenceError(f"Share {token} not found", status_code=404)
        self._shares[token]["view_prefs"] = to_snapshot(view_prefs)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_backend(
    backend_url: str = "",
    *,
    headers: dict[str, str] | None = None,
    timeout: float = 15.0,
    share_base_url: str = "http://localhost:8080",
) -> OfferBackend:
    """HttpOfferBackend if a URL is configured, InMemoryOfferBackend otherwise."""
    if backend_url:
        logger.info("Using HTTP offer backend")
        return HttpOfferBackend(backend_url, headers=headers, timeout=timeout)
    logger.info("Using in-memory offer backend (non-persistent)")
    return InMemoryOfferBackend(share_base_url)
