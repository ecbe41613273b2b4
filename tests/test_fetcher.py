import httpx
import pytest

from conftest import FakeUpstream
from streamproxy.errors import (
    FetchExhausted,
    LinkExpired,
    UpstreamForbidden,
    UpstreamRateLimited,
    UpstreamRejected,
    UpstreamTimeout,
    UpstreamUnreachable,
    Unclassified,
)
from streamproxy.fetcher import RetryingFetcher

MEDIA_URL = "https://cdn.example.com/video.mp4"
NOW = 1_800_000_000


def _ok(_request):
    return httpx.Response(200, content=b"payload")


def _fetcher(upstream, sleeps, **kwargs):
    return RetryingFetcher(upstream.client(), sleep=sleeps, clock=lambda: NOW, **kwargs)


@pytest.mark.anyio
async def test_first_attempt_success_does_not_wait(sleeps):
    upstream = FakeUpstream(_ok)
    response = await _fetcher(upstream, sleeps).fetch(MEDIA_URL, {"Range": "bytes=0-"})

    assert response.status_code == 200
    assert await response.aread() == b"payload"
    assert len(upstream.requests) == 1
    assert upstream.requests[0].headers["range"] == "bytes=0-"
    assert sleeps.calls == []


@pytest.mark.anyio
async def test_network_failures_then_success_backs_off_exponentially(sleeps):
    upstream = FakeUpstream(
        httpx.ConnectError("connection refused"),
        httpx.ConnectError("connection refused"),
        _ok,
    )
    response = await _fetcher(upstream, sleeps).fetch(MEDIA_URL)

    assert response.status_code == 200
    assert len(upstream.requests) == 3
    assert sleeps.calls == [1.0, 2.0]


@pytest.mark.anyio
async def test_exhausted_connect_errors_map_to_unreachable(sleeps):
    upstream = FakeUpstream(httpx.ConnectError("Name or service not known"))

    with pytest.raises(UpstreamUnreachable) as excinfo:
        await _fetcher(upstream, sleeps).fetch(MEDIA_URL)

    assert isinstance(excinfo.value, FetchExhausted)
    assert excinfo.value.status_code == 404
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)
    assert len(upstream.requests) == 3
    # No wait after the final attempt.
    assert sleeps.calls == [1.0, 2.0]


@pytest.mark.anyio
async def test_exhausted_timeouts_map_to_upstream_timeout(sleeps):
    upstream = FakeUpstream(httpx.ReadTimeout("timed out"))

    with pytest.raises(UpstreamTimeout) as excinfo:
        await _fetcher(upstream, sleeps, max_attempts=2).fetch(MEDIA_URL)

    assert excinfo.value.status_code == 504
    assert len(upstream.requests) == 2


@pytest.mark.anyio
async def test_other_transport_errors_are_unclassified(sleeps):
    upstream = FakeUpstream(httpx.RemoteProtocolError("peer closed connection"))

    with pytest.raises(Unclassified):
        await _fetcher(upstream, sleeps, max_attempts=1).fetch(MEDIA_URL)


@pytest.mark.anyio
async def test_per_call_attempt_override(sleeps):
    upstream = FakeUpstream(httpx.ConnectError("refused"))

    with pytest.raises(UpstreamUnreachable):
        await _fetcher(upstream, sleeps).fetch(MEDIA_URL, max_attempts=5)

    assert len(upstream.requests) == 5
    assert sleeps.calls == [1.0, 2.0, 4.0, 8.0]


@pytest.mark.anyio
async def test_429_honours_retry_after_and_consumes_an_attempt(sleeps):
    upstream = FakeUpstream(
        lambda _r: httpx.Response(429, headers={"Retry-After": "5"}),
        _ok,
    )
    response = await _fetcher(upstream, sleeps).fetch(MEDIA_URL)

    assert response.status_code == 200
    assert sleeps.calls == [5.0]
    assert len(upstream.requests) == 2


@pytest.mark.anyio
async def test_429_without_retry_after_uses_backoff(sleeps):
    upstream = FakeUpstream(
        lambda _r: httpx.Response(429),
        lambda _r: httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
        _ok,
    )
    response = await _fetcher(upstream, sleeps).fetch(MEDIA_URL)

    assert response.status_code == 200
    assert sleeps.calls == [1.0, 2.0]


@pytest.mark.anyio
async def test_persistent_429_exhausts_budget(sleeps):
    upstream = FakeUpstream(lambda _r: httpx.Response(429))

    with pytest.raises(UpstreamRateLimited) as excinfo:
        await _fetcher(upstream, sleeps, rate_limit_retry_after_s=60).fetch(MEDIA_URL)

    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after == 60
    assert len(upstream.requests) == 3


@pytest.mark.anyio
async def test_generic_profile_returns_error_status_to_caller(sleeps):
    upstream = FakeUpstream(lambda _r: httpx.Response(404, content=b"nope"))
    response = await _fetcher(upstream, sleeps).fetch(MEDIA_URL)

    assert response.status_code == 404
    assert len(upstream.requests) == 1
    await response.aclose()


PROVIDER_URL = f"https://rr1---sn-x.googlevideo.com/videoplayback?expire={NOW + 3600}&itag=22"


@pytest.mark.anyio
async def test_provider_profile_adds_browser_headers(sleeps):
    upstream = FakeUpstream(_ok)
    fetcher = _fetcher(upstream, sleeps)

    response = await fetcher.fetch(PROVIDER_URL, {"User-Agent": "agent/1", "Range": "bytes=500-999"})

    assert response.status_code == 200
    sent = upstream.requests[0].headers
    assert sent["referer"] == "https://www.youtube.com/"
    assert sent["origin"] == "https://www.youtube.com"
    assert sent["user-agent"] == "agent/1"
    assert sent["range"] == "bytes=500-999"
    assert fetcher.profile_for(PROVIDER_URL).timeout_s == 15.0


@pytest.mark.anyio
async def test_provider_profile_uses_its_own_timeout(sleeps):
    upstream = FakeUpstream(_ok)
    await _fetcher(upstream, sleeps, provider_timeout_s=7.5).fetch(PROVIDER_URL)

    assert upstream.requests[0].extensions["timeout"]["read"] == 7.5


@pytest.mark.anyio
async def test_expired_provider_link_fails_without_network(sleeps):
    upstream = FakeUpstream(_ok)
    expired = f"https://rr1---sn-x.googlevideo.com/videoplayback?expire={NOW - 600}"

    with pytest.raises(LinkExpired) as excinfo:
        await _fetcher(upstream, sleeps).fetch(expired)

    assert excinfo.value.status_code == 410
    assert upstream.requests == []
    assert sleeps.calls == []


@pytest.mark.anyio
async def test_provider_forbidden_fails_immediately(sleeps):
    upstream = FakeUpstream(lambda _r: httpx.Response(403))

    with pytest.raises(UpstreamForbidden) as excinfo:
        await _fetcher(upstream, sleeps).fetch(PROVIDER_URL)

    assert excinfo.value.status_code == 403
    assert excinfo.value.solution
    assert len(upstream.requests) == 1
    assert sleeps.calls == []


@pytest.mark.anyio
async def test_provider_other_error_status_is_rejected(sleeps):
    upstream = FakeUpstream(lambda _r: httpx.Response(500))

    with pytest.raises(UpstreamRejected) as excinfo:
        await _fetcher(upstream, sleeps).fetch(PROVIDER_URL)

    assert excinfo.value.upstream_status == 500
    assert len(upstream.requests) == 1


@pytest.mark.anyio
async def test_provider_still_retries_network_failures(sleeps):
    upstream = FakeUpstream(httpx.ConnectTimeout("slow"), _ok)
    response = await _fetcher(upstream, sleeps).fetch(PROVIDER_URL)

    assert response.status_code == 200
    assert sleeps.calls == [1.0]


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryingFetcher(httpx.AsyncClient(), max_attempts=0)


@pytest.mark.anyio
async def test_malformed_url_fails_without_retry(sleeps):
    upstream = FakeUpstream(_ok)

    with pytest.raises(Unclassified) as excinfo:
        await _fetcher(upstream, sleeps).fetch("http://[::1/v.mp4")

    assert isinstance(excinfo.value.__cause__, httpx.InvalidURL)
    assert excinfo.value.attempts == 1
    assert upstream.requests == []
    assert sleeps.calls == []
