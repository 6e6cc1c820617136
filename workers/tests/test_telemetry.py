from jobboard_worker.core.config import Settings
from jobboard_worker.core.telemetry import build_exporter, parse_headers, setup_worker_telemetry


def test_parse_headers_skips_malformed_items() -> None:
    assert parse_headers("authorization=Bearer abc, x-team = jobs ,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "jobs",
    }
    assert parse_headers(None) == {}


def test_build_exporter_is_skipped_without_endpoint(monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", raising=False)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    assert build_exporter(service_name="jobboard-worker", endpoint=None, raw_headers=None) is None


def test_disabled_telemetry_is_a_no_op() -> None:
    runtime = setup_worker_telemetry(Settings(otel_enabled=False))
    assert runtime.enabled is False
    assert runtime.provider is None
