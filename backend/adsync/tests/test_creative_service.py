"""Tests for creative batch resolution and persistence."""

from types import SimpleNamespace

import httpx
import pytest

from adsync.models import AdCreative, FetchStatusEnum
from adsync.services import creative_service
from adsync.services.creative_service import MAX_FETCH_ATTEMPTS, should_skip
from adsync.services.media_cache import MediaCache
from adsync.services.meta_graph_client import BatchResponse, MetaAuthError, MetaNotFoundError


def _ad_payload(ad_id, title="Title", image_url=None):
    return {
        "id": ad_id,
        "name": f"Ad {ad_id}",
        "effective_status": "ACTIVE",
        "creative": {
            "id": f"cr-{ad_id}",
            "title": title,
            "image_url": image_url or f"https://cdn.example.com/{ad_id}.jpg?width=1200&height=628",
        },
    }


class _FakeBatchClient:
    """Answers batch sub-requests and single GETs from canned ad payloads."""

    batch_size = 50

    def __init__(self, ads, failures=None):
        self.ads = ads
        self.failures = failures or {}
        self.batches = []
        self.get_calls = []

    def fetch_batch(self, requests):
        ids = [request["relative_url"].split("?", 1)[0] for request in requests]
        self.batches.append(ids)
        responses = []
        for index, (ad_id, request) in enumerate(zip(ids, requests)):
            if ad_id in self.failures:
                responses.append(BatchResponse(index, request, 400, error=self.failures[ad_id]))
            else:
                responses.append(BatchResponse(index, request, 200, body=self.ads[ad_id]))
        return responses

    def get(self, path, params=None):
        self.get_calls.append(path)
        if path in self.failures:
            raise self.failures[path]
        return self.ads[path]

    def fetch_all(self, path, params=None, max_pages=None):
        return []


def _row(db, workspace, ad_id):
    return db.query(AdCreative).filter_by(workspace_id=workspace.id, ad_id=ad_id).one()


def test_batch_isolates_failed_ad(db, workspace, account):
    """WHAT: One ad of three fails upstream
    WHY: The other two are resolved and stored; the failure is recorded, not raised
    """
    client = _FakeBatchClient(
        ads={ad_id: _ad_payload(ad_id) for ad_id in ("ad-1", "ad-3")},
        failures={"ad-2": MetaNotFoundError("Unsupported get request", code=100, subcode=33, http_status=400)},
    )

    result = creative_service.resolve_creatives_batch(
        db, workspace_id=workspace.id, ad_account=account, ad_ids=["ad-1", "ad-2", "ad-3"],
        client=client, delay_seconds=0,
    )

    assert set(result.records) == {"ad-1", "ad-3"}
    assert result.errors == {"ad-2": "Unsupported get request"}
    assert result.resolved == 2
    assert result.success is False

    assert _row(db, workspace, "ad-1").fetch_status == FetchStatusEnum.success
    failed = _row(db, workspace, "ad-2")
    assert failed.error_message == "Unsupported get request"
    assert failed.fetch_attempts == 1
    assert failed.fetch_status == FetchStatusEnum.failed


def test_batch_skips_usable_records_unless_forced(db, workspace, account):
    client = _FakeBatchClient(ads={"ad-1": _ad_payload("ad-1"), "ad-2": _ad_payload("ad-2")})
    creative_service.resolve_creatives_batch(
        db, workspace_id=workspace.id, ad_account=account, ad_ids=["ad-1"], client=client, delay_seconds=0,
    )

    result = creative_service.resolve_creatives_batch(
        db, workspace_id=workspace.id, ad_account=account, ad_ids=["ad-1", "ad-2"], client=client, delay_seconds=0,
    )
    assert result.skipped == ["ad-1"]
    assert client.batches[-1] == ["ad-2"]
    assert result.records["ad-1"]["title"] == "Title"

    forced = creative_service.resolve_creatives_batch(
        db, workspace_id=workspace.id, ad_account=account, ad_ids=["ad-1"], client=client,
        force=True, delay_seconds=0,
    )
    assert forced.skipped == []
    assert client.batches[-1] == ["ad-1"]


def test_reresolution_overwrites_and_counts_attempts(db, workspace, account):
    client = _FakeBatchClient(ads={"ad-1": _ad_payload("ad-1", title="Old")})
    creative_service.resolve_creative(db, workspace_id=workspace.id, ad_account=account, ad_id="ad-1", client=client)

    client.ads["ad-1"] = _ad_payload("ad-1", title="New")
    creative_service.resolve_creative(db, workspace_id=workspace.id, ad_account=account, ad_id="ad-1", client=client)

    rows = db.query(AdCreative).filter_by(workspace_id=workspace.id).all()
    assert len(rows) == 1
    assert rows[0].title == "New"
    assert rows[0].fetch_attempts == 2


def test_batches_are_chunked_and_paced(db, workspace, account):
    ad_ids = ["ad-1", "ad-2", "ad-3"]
    client = _FakeBatchClient(ads={ad_id: _ad_payload(ad_id) for ad_id in ad_ids})
    sleeps = []

    result = creative_service.resolve_creatives_batch(
        db, workspace_id=workspace.id, ad_account=account, ad_ids=ad_ids + ["ad-1"], client=client,
        batch_size=2, delay_seconds=0.2, sleep=sleeps.append,
    )

    assert client.batches == [["ad-1", "ad-2"], ["ad-3"]]
    assert sleeps == [0.2]
    assert result.resolved == 3


def test_auth_error_in_batch_propagates(db, workspace, account):
    class _ExpiredClient(_FakeBatchClient):
        def fetch_batch(self, requests):
            raise MetaAuthError("Session has expired", code=190)

    with pytest.raises(MetaAuthError):
        creative_service.resolve_creatives_batch(
            db, workspace_id=workspace.id, ad_account=account, ad_ids=["ad-1"],
            client=_ExpiredClient(ads={}), delay_seconds=0,
        )


def test_single_resolution_failure_recorded_then_raised(db, workspace, account):
    client = _FakeBatchClient(ads={}, failures={"ad-9": MetaNotFoundError("Object does not exist", code=803)})

    with pytest.raises(MetaNotFoundError):
        creative_service.resolve_creative(db, workspace_id=workspace.id, ad_account=account, ad_id="ad-9", client=client)

    assert _row(db, workspace, "ad-9").error_message == "Object does not exist"


def test_enrich_clears_enrichment_flag(db, workspace, account):
    client = _FakeBatchClient(ads={"ad-1": _ad_payload("ad-1", image_url="https://cdn.example.com/small.jpg?w=100&h=100")})

    plain = creative_service.resolve_creative(db, workspace_id=workspace.id, ad_account=account, ad_id="ad-1", client=client)
    assert plain["needs_enrichment"] is True

    enriched = creative_service.enrich_creative(db, workspace_id=workspace.id, ad_account=account, ad_id="ad-1", client=client)
    assert enriched["needs_enrichment"] is False
    assert _row(db, workspace, "ad-1").enriched_at is not None


def test_resolved_media_is_cached_when_cache_given(db, workspace, account, tmp_path):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, content=b"jpegbytes", headers={"content-type": "image/jpeg"})
    )
    cache = MediaCache(tmp_path, "https://media.example.com", transport=transport)
    client = _FakeBatchClient(ads={"ad-1": _ad_payload("ad-1")})

    values = creative_service.resolve_creative(
        db, workspace_id=workspace.id, ad_account=account, ad_id="ad-1", client=client, media_cache=cache,
    )
    cache.close()

    assert values["cached_image_url"].startswith(f"https://media.example.com/workspaces/{workspace.id}/images/ad-1/")
    assert values["file_size"] == len(b"jpegbytes")


@pytest.mark.parametrize(
    "row,expected",
    [
        (None, False),
        (SimpleNamespace(fetch_status=FetchStatusEnum.failed, fetch_attempts=MAX_FETCH_ATTEMPTS,
                         image_url=None, title=None, body=None, description=None, cached_image_url=None), True),
        (SimpleNamespace(fetch_status=FetchStatusEnum.failed, fetch_attempts=1,
                         image_url=None, title=None, body=None, description=None, cached_image_url=None), False),
        (SimpleNamespace(fetch_status=FetchStatusEnum.partial, fetch_attempts=1,
                         image_url=None, title="Only text", body=None, description=None, cached_image_url=None), True),
        (SimpleNamespace(fetch_status=FetchStatusEnum.partial, fetch_attempts=1,
                         image_url="https://scontent.xx.fbcdn.net/v/p64x64/a.jpg", title="T", body=None,
                         description=None, cached_image_url=None), False),
        (SimpleNamespace(fetch_status=FetchStatusEnum.success, fetch_attempts=1,
                         image_url="https://scontent.xx.fbcdn.net/v/p64x64/a.jpg", title="T", body=None,
                         description=None, cached_image_url="https://media.example.com/a.jpg"), True),
    ],
)
def test_should_skip(row, expected):
    assert should_skip(row) is expected
