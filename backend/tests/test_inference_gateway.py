import asyncio
import itertools

import pytest
import requests

from app.core.errors import (
    AuthError,
    InferenceTimeoutError,
    RateLimitError,
    RemoteJobError,
    ServiceError,
)
from app.services.inference_gateway import (
    InferenceGateway,
    InferenceRequest,
    KeyedOutput,
    ListOutput,
    ReplicateGateway,
    ScalarOutput,
    normalize_output,
    parse_output,
    poll_delays,
)

from conftest import FakeResponse, SleepRecorder

API_URL = "https://api.replicate.test/v1"
IMAGE_URL = "https://example.supabase.co/storage/v1/object/public/uploads/images/cat.jpg"


# ==================== OUTPUT NORMALIZATION ====================

def test_parse_output_tags_shapes():
    assert parse_output("https://x/a.glb") == ScalarOutput("https://x/a.glb")
    assert parse_output(["a", "b"]) == ListOutput(("a", "b"))
    assert parse_output({"mesh": "a"}) == KeyedOutput({"mesh": "a"})


def test_string_output_used_as_is():
    assert normalize_output("https://x/model.glb") == "https://x/model.glb"


def test_list_prefers_mesh_extension():
    assert normalize_output(["https://x/preview.png", "https://x/mesh.obj", "https://x/extra.txt"]) == "https://x/mesh.obj"


def test_list_extension_matched_on_path_not_query():
    output = ["https://x/mesh.glb?token=abc", "https://x/other.txt"]
    assert normalize_output(output) == "https://x/mesh.glb?token=abc"


def test_list_without_mesh_extension_uses_last():
    assert normalize_output(["https://x/a.png", "https://x/b.zip"]) == "https://x/b.zip"


def test_mapping_uses_conventional_key():
    assert normalize_output({"preview": "https://x/p.png", "mesh": "https://x/m.glb"}) == "https://x/m.glb"
    assert normalize_output({"url": "https://x/u.glb", "other": "y"}) == "https://x/u.glb"


def test_mapping_key_priority():
    output = {"url": "https://x/url.glb", "model": "https://x/model.glb"}
    assert normalize_output(output) == "https://x/model.glb"


def test_mapping_without_conventional_key_uses_first_value():
    assert normalize_output({"result": "https://x/r.glb", "log": "done"}) == "https://x/r.glb"


def test_nested_mapping_resolved():
    assert normalize_output({"output": ["https://x/a.png", "https://x/b.glb"]}) == "https://x/b.glb"


@pytest.mark.parametrize("raw", [None, 42, [], {}, [None], {"mesh": ""}])
def test_unusable_output_rejected(raw):
    with pytest.raises(RemoteJobError, match="Invalid model output"):
        normalize_output(raw)


def test_poll_delays_grow_and_cap():
    delays = list(itertools.islice(poll_delays(), 9))
    assert delays[:4] == [1.0, 1.5, 2.25, 3.375]
    assert delays[-1] == 10.0
    assert max(delays) == 10.0


# ==================== REPLICATE GATEWAY ====================

class ReplicateHttp:
    """Scripted responses for the prediction API, keyed by (method, path)."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def request(self, method, url, headers=None, timeout=None, json=None):
        path = url[len(API_URL):]
        self.calls.append({"method": method, "path": path, "headers": headers, "json": json})
        queue = self.routes.get((method, path))
        if not queue:
            raise AssertionError(f"Unexpected request {method} {path}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


def prediction(status, output=None, error=None, pid="pred-1"):
    return FakeResponse(status_code=201, json_data={"id": pid, "status": status, "output": output, "error": error})


def make_gateway(http, mode="sync", token="r8_test", poll_max_attempts=60):
    return ReplicateGateway(
        api_token=token,
        model_version="version-hash",
        api_url=API_URL,
        mode=mode,
        http=http,
        sleep=SleepRecorder(),
        poll_max_attempts=poll_max_attempts,
    )


@pytest.fixture
def request_():
    return InferenceRequest(image_url=IMAGE_URL)


def test_gateway_satisfies_protocol():
    assert isinstance(make_gateway(ReplicateHttp()), InferenceGateway)


def test_sync_mode_single_call(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("succeeded", output="https://x/model.glb"))
    gateway = make_gateway(http)

    result = asyncio.run(gateway.generate(request_))

    assert result.mesh_url == "https://x/model.glb"
    assert result.job_id == "pred-1"
    call = http.calls[0]
    assert call["headers"]["Authorization"] == "Bearer r8_test"
    assert call["headers"]["Prefer"] == "wait=60"
    assert call["json"] == {
        "version": "version-hash",
        "input": {"image": IMAGE_URL, "mc_resolution": 256, "foreground_ratio": 0.85},
    }


def test_custom_params_forwarded():
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("succeeded", output="https://x/model.glb"))
    request = InferenceRequest(image_url=IMAGE_URL, mc_resolution=512, foreground_ratio=0.6)

    asyncio.run(make_gateway(http).generate(request))

    assert http.calls[0]["json"]["input"]["mc_resolution"] == 512
    assert http.calls[0]["json"]["input"]["foreground_ratio"] == 0.6


def test_async_mode_polls_until_done(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("starting"))
    http.add(
        "GET",
        "/predictions/pred-1",
        prediction("processing"),
        prediction("processing"),
        prediction("succeeded", output=["https://x/preview.png", "https://x/mesh.glb"]),
    )
    gateway = make_gateway(http, mode="async")

    result = asyncio.run(gateway.generate(request_))

    assert result.mesh_url == "https://x/mesh.glb"
    assert "Prefer" not in http.calls[0]["headers"]
    assert gateway.sleep.delays == [1.0, 1.5]


def test_sync_mode_falls_back_to_polling(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("processing"))
    http.add("GET", "/predictions/pred-1", prediction("succeeded", output={"mesh": "https://x/m.glb"}))

    result = asyncio.run(make_gateway(http).generate(request_))

    assert result.mesh_url == "https://x/m.glb"


@pytest.mark.parametrize("status", ["failed", "canceled"])
def test_terminal_failure_while_polling(request_, status):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("starting"))
    http.add("GET", "/predictions/pred-1", prediction(status, error="CUDA out of memory"))

    with pytest.raises(RemoteJobError, match=f"Prediction {status}: CUDA out of memory"):
        asyncio.run(make_gateway(http, mode="async").generate(request_))


def test_failure_without_detail(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("failed"))

    with pytest.raises(RemoteJobError, match="Unknown error"):
        asyncio.run(make_gateway(http).generate(request_))


def test_polling_budget_exhausted(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("starting"))
    http.add("GET", "/predictions/pred-1", prediction("processing"))
    http.add("POST", "/predictions/pred-1/cancel", prediction("canceled"))
    gateway = make_gateway(http, mode="async", poll_max_attempts=5)

    with pytest.raises(InferenceTimeoutError, match="timed out after 5 polls"):
        asyncio.run(gateway.generate(request_))
    assert len(gateway.sleep.delays) == 5
    assert (http.calls[-1]["method"], http.calls[-1]["path"]) == ("POST", "/predictions/pred-1/cancel")


def test_cancel_failure_does_not_mask_timeout(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("starting"))
    http.add("GET", "/predictions/pred-1", prediction("processing"))
    http.add("POST", "/predictions/pred-1/cancel", FakeResponse(status_code=500, json_data={"detail": "busy"}))
    gateway = make_gateway(http, mode="async", poll_max_attempts=2)

    with pytest.raises(InferenceTimeoutError):
        asyncio.run(gateway.generate(request_))
    assert http.calls[-1]["path"] == "/predictions/pred-1/cancel"


def test_polling_error_cancels_running_prediction(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("starting"))
    http.add(
        "GET",
        "/predictions/pred-1",
        prediction("processing"),
        FakeResponse(status_code=503, json_data={"detail": "unavailable"}),
    )
    http.add("POST", "/predictions/pred-1/cancel", prediction("canceled"))

    with pytest.raises(ServiceError, match="503"):
        asyncio.run(make_gateway(http, mode="async").generate(request_))
    assert [c["path"] for c in http.calls if c["method"] == "POST"] == [
        "/predictions",
        "/predictions/pred-1/cancel",
    ]


def test_terminal_failure_is_not_cancelled(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("starting"))
    http.add("GET", "/predictions/pred-1", prediction("failed", error="bad input"))

    with pytest.raises(RemoteJobError):
        asyncio.run(make_gateway(http, mode="async").generate(request_))
    assert not any(c["path"].endswith("/cancel") for c in http.calls)


def test_missing_token_rejected_before_any_request(request_):
    http = ReplicateHttp()
    gateway = make_gateway(http, token=None)

    assert gateway.check_credentials() is False
    with pytest.raises(AuthError, match="Missing REPLICATE_API_TOKEN"):
        asyncio.run(gateway.generate(request_))
    assert http.calls == []


@pytest.mark.parametrize(
    "status_code, error_type",
    [(401, AuthError), (403, AuthError), (429, RateLimitError), (500, ServiceError), (503, ServiceError), (422, RemoteJobError)],
)
def test_http_errors_classified(request_, status_code, error_type):
    http = ReplicateHttp()
    http.add("POST", "/predictions", FakeResponse(status_code=status_code, json_data={"detail": "nope"}))

    with pytest.raises(error_type) as excinfo:
        asyncio.run(make_gateway(http).generate(request_))
    assert excinfo.value.status_code in (401, 429, 500)


def test_network_error_is_service_error(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", requests.ConnectionError("connection refused"))

    with pytest.raises(ServiceError, match="unreachable"):
        asyncio.run(make_gateway(http).generate(request_))


def test_create_and_cancel_prediction(request_):
    http = ReplicateHttp()
    http.add("POST", "/predictions", prediction("starting", pid="pred-9"))
    http.add("POST", "/predictions/pred-9/cancel", prediction("canceled", pid="pred-9"))
    gateway = make_gateway(http, mode="async")

    created = asyncio.run(gateway.create_prediction(request_))
    canceled = asyncio.run(gateway.cancel_prediction(created["id"]))

    assert created["status"] == "starting"
    assert canceled["status"] == "canceled"


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        ReplicateGateway(api_token="t", model_version="v", mode="batch")
