"""
Pytest configuration and fixtures
"""

import copy
import json
import re
import httpx
import pytest
from typing import Any, Dict, List, Optional
from core.exceptions import EntityStoreError
from ingestion.checkpoint import StateStore
from ingestion.client import CatalogAPIClient
from ingestion.entity_store import CategoryRef, EntityStore
from ingestion.guard import ResourceGuard
from ingestion.manifest import ManifestStore
from ingestion.pipeline import SyncPipeline
from schemas.sync import composite_key

BASE_URL = "https://catalog.test"
DETAIL_RE = re.compile(r"/api/plugin/combine/cases/(\d+)$")


# ============================================================================
# In-memory StateStore
# ============================================================================

class FakeStateStore(StateStore):
    """Dict-backed StateStore with a manual clock for TTL tests"""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, Optional[float]] = {}
        self.now = 0.0

    def advance(self, seconds: float):
        self.now += seconds

    def _live(self, key: str) -> bool:
        if key not in self.data:
            return False
        expires_at = self.expiry.get(key)
        return expires_at is None or expires_at > self.now

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self.data[key]) if self._live(key) else None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        # Values go through JSON like the sync_state JSONB column
        self.data[key] = json.loads(json.dumps(value))
        self.expiry[key] = self.now + ttl_seconds if ttl_seconds is not None else None

    async def delete(self, key: str):
        self.data.pop(key, None)
        self.expiry.pop(key, None)

    async def add(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        if self._live(key):
            return False
        await self.set(key, value, ttl_seconds)
        return True


# ============================================================================
# In-memory EntityStore
# ============================================================================

class FakeEntityStore(EntityStore):
    """Dict-backed EntityStore; ``fail_case_ids`` makes create() raise"""

    def __init__(self):
        self.records: Dict[int, Dict[str, Any]] = {}
        self.categories: Dict[int, Dict[str, Any]] = {}
        self.orders: Dict[int, List[Dict[str, Any]]] = {}
        self.fail_case_ids = set()
        self.commits = 0
        self.rollbacks = 0
        self._next_id = 1

    def _new_id(self) -> int:
        new_id = self._next_id
        self._next_id += 1
        return new_id

    def add_category(self, name: str, external_id: Optional[str] = None, parent_id: Optional[int] = None) -> int:
        category_id = self._new_id()
        self.categories[category_id] = {
            "name": name,
            "slug": name.lower().replace(" ", "-"),
            "external_id": external_id,
            "parent_id": parent_id,
        }
        return category_id

    def _ref(self, category_id: int) -> CategoryRef:
        fields = self.categories[category_id]
        return CategoryRef(
            id=category_id,
            name=fields["name"],
            slug=fields["slug"],
            external_id=fields.get("external_id"),
            parent_id=fields.get("parent_id"),
        )

    def records_for(self, procedure_id) -> List[Dict[str, Any]]:
        return [r for r in self.records.values() if r["procedure_external_id"] == str(procedure_id)]

    async def find_by_external_id(self, procedure_id, case_id) -> Optional[int]:
        for local_id, fields in self.records.items():
            if fields["procedure_external_id"] == str(procedure_id) and fields["case_external_id"] == str(case_id):
                return local_id
        return None

    async def create(self, fields: Dict[str, Any]) -> int:
        if fields["case_external_id"] in self.fail_case_ids:
            raise EntityStoreError(
                "Simulated write failure",
                context={"composite_key": f"{fields['procedure_external_id']}:{fields['case_external_id']}"}
            )
        local_id = self._new_id()
        self.records[local_id] = dict(fields)
        return local_id

    async def update(self, local_id: int, fields: Dict[str, Any]):
        self.records[local_id].update(fields)

    async def delete(self, local_id: int):
        self.records.pop(local_id, None)

    async def assign_category(self, local_id: int, category_ids):
        category_ids = list(category_ids)
        self.records[local_id]["procedure_term_id"] = category_ids[0] if category_ids else None
        self.records[local_id]["procedure_term_ids"] = category_ids

    async def set_order(self, local_id: int, category_id: int, index: int):
        self.records[local_id]["case_order"] = index

    async def store_category_order(self, category_id: int, entries):
        self.orders[category_id] = [entry.model_dump() for entry in entries]

    async def get_ordered_case_ids(self, procedure_external_id) -> List[int]:
        category = await self.find_category_by_external_id(procedure_external_id)
        if category is None:
            return []
        return [entry["local_id"] for entry in self.orders.get(category.id, [])]

    async def remove_orphans(self, procedure_external_ids, keep_keys) -> List[int]:
        procedures = {str(p) for p in procedure_external_ids}
        orphan_ids = [
            local_id for local_id, fields in self.records.items()
            if fields["procedure_external_id"] in procedures
            and composite_key(fields["procedure_external_id"], fields["case_external_id"]) not in keep_keys
        ]
        for local_id in orphan_ids:
            del self.records[local_id]
        return orphan_ids

    async def count_cases(self) -> int:
        return len(self.records)

    async def find_category_by_external_id(self, external_id) -> Optional[CategoryRef]:
        matches = [
            category_id for category_id, fields in self.categories.items()
            if fields.get("external_id") == str(external_id)
        ]
        matches.sort(key=lambda category_id: self.categories[category_id].get("parent_id") is None)
        return self._ref(matches[0]) if matches else None

    async def find_category_by_slug(self, slug: str) -> Optional[CategoryRef]:
        for category_id, fields in self.categories.items():
            if fields["slug"] == slug:
                return self._ref(category_id)
        return None

    async def create_category(self, fields: Dict[str, Any]) -> int:
        category_id = self._new_id()
        self.categories[category_id] = dict(fields)
        return category_id

    async def update_category(self, category_id: int, fields: Dict[str, Any]):
        self.categories[category_id].update(fields)

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


# ============================================================================
# Remote payloads
# ============================================================================

def make_sidebar() -> Dict[str, Any]:
    return {
        "success": True,
        "data": [
            {
                "name": "Body",
                "slugName": "body",
                "ids": [1],
                "totalCase": 5,
                "procedures": [
                    {"name": "Tummy Tuck", "slugName": "tummy-tuck", "ids": [101, 0], "totalCase": 3, "nudity": "true"},
                    {"name": "Liposuction", "slugName": "liposuction", "ids": [102], "totalCase": 2},
                    {"name": "Arm Lift", "slugName": "arm-lift", "ids": [103], "totalCase": 0},
                ],
            },
            {
                "name": "Face",
                "ids": [2],
                "totalCase": 1,
                "procedures": [
                    {"name": "Facelift", "ids": [201], "totalCase": 1, "description": "Lower face"},
                ],
            },
        ],
    }


def make_case(case_id: int, procedure_ids: List[int], **overrides) -> Dict[str, Any]:
    """v2 detail record"""
    record = {
        "id": case_id,
        "caseId": f"C{case_id}",
        "procedureIds": procedure_ids,
        "isForWebsite": True,
        "draft": False,
        "patientInfo": {"age": 42, "gender": "female", "height": 165, "heightUnit": "cm"},
        "seoInfo": {"suffixUrl": f"Case {case_id} Results", "headline": f"Case {case_id}"},
        "creator": {"id": 9, "firstName": "Ann", "lastName": "Lee", "suffix": "MD"},
        "photoSets": [
            {
                "images": {
                    "before": {"url": f"https://img.test/{case_id}/before.jpg"},
                    "after": {"url": f"https://img.test/{case_id}/after.jpg"},
                },
                "isNude": False,
            }
        ],
    }
    record.update(overrides)
    return record


class FakeCatalog:
    """
    httpx.MockTransport handler emulating the catalog endpoints.

    Attributes:
        cases: procedure ID -> ordered case IDs returned by the listing
        details: case ID -> detail record (v2 unless a payload is given)
        failing: case IDs whose detail request answers HTTP 500
        paginate: include pagination.hasNext in listing responses
    """

    def __init__(self):
        self.sidebar = make_sidebar()
        self.cases: Dict[int, List[int]] = {
            101: [5001, 5002, 5003],
            102: [6001, 6002],
            201: [7001],
        }
        self.details: Dict[int, Dict[str, Any]] = {}
        self.failing = set()
        self.paginate = True
        self.requests: List[Dict[str, Any]] = []

        for procedure_id, case_ids in self.cases.items():
            for case_id in case_ids:
                self.details[case_id] = {"success": True, "data": {"case": make_case(case_id, [procedure_id])}}

    def detail_requests(self) -> List[int]:
        return [r["case_id"] for r in self.requests if r["endpoint"] == "detail"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        path = request.url.path

        if path.endswith("/sidebar"):
            self.requests.append({"endpoint": "sidebar", "body": body})
            return httpx.Response(200, json=self.sidebar)

        match = DETAIL_RE.search(path)
        if match:
            case_id = int(match.group(1))
            self.requests.append({"endpoint": "detail", "case_id": case_id, "body": body})
            if case_id in self.failing:
                return httpx.Response(500, text="upstream exploded")
            if case_id not in self.details:
                return httpx.Response(404, json={"success": False, "message": "not found"})
            return httpx.Response(200, json=self.details[case_id])

        if path.endswith("/cases"):
            self.requests.append({"endpoint": "listing", "body": body})
            procedure_id = body["procedureIds"][0]
            ids = self.cases.get(procedure_id, [])
            if not self.paginate:
                return httpx.Response(200, json={"success": True, "data": [{"id": i} for i in ids]})
            page = body.get("page", body.get("count", 1))
            limit = body.get("limit", 10)
            window = ids[(page - 1) * limit:page * limit]
            return httpx.Response(200, json={
                "success": True,
                "data": [{"id": i} for i in window],
                "pagination": {"hasNext": page * limit < len(ids)},
            })

        return httpx.Response(404, json={"success": False})


def make_client(catalog, **kwargs) -> CatalogAPIClient:
    options = {
        "base_url": BASE_URL,
        "api_tokens": ["token-1"],
        "website_property_ids": [42],
        "concurrency": 2,
        "page_size": 10,
        "listing_mode": "auto",
    }
    options.update(kwargs)
    return CatalogAPIClient(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(catalog)),
        **options
    )


def quiet_guard() -> ResourceGuard:
    """Guard whose budgets never trip"""
    return ResourceGuard(memory_limit_mb=1024, time_budget_seconds=3600, memory_probe=lambda: 10.0)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def state_store():
    return FakeStateStore()


@pytest.fixture
def entity_store():
    return FakeEntityStore()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def manifest_store(tmp_path):
    return ManifestStore(tmp_path / "sync-data")


@pytest.fixture
def pipeline_factory(state_store, entity_store, catalog, manifest_store):
    """Build a SyncPipeline over the in-memory fakes"""

    def factory(batch_size: int = 2, **client_kwargs) -> SyncPipeline:
        return SyncPipeline(
            state_store=state_store,
            manifest_store=manifest_store,
            client=make_client(catalog, **client_kwargs),
            entity_store=entity_store,
            guard_factory=quiet_guard,
            batch_size=batch_size,
        )

    return factory
