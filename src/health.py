import logging
from dataclasses import dataclass

import sounddevice as sd

from config import TranscriberConfig
from domain import providers

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(config: TranscriberConfig) -> list[HealthCheckResult]:
    results = [
        _check_capture_device(config),
        _check_api_keys(config),
        _check_recall(config),
    ]

    passed = sum(1 for r in results if r.passed)

    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    critical_checks = {"capture_device", "api_keys"}
    return any(not r.passed and r.name in critical_checks for r in results)


def _check_capture_device(config: TranscriberConfig) -> HealthCheckResult:
    name = "capture_device"
    try:
        device_name = config.capture_device
        if device_name:
            for dev in sd.query_devices():
                if device_name.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                    return HealthCheckResult(name=name, passed=True, detail=f"Loopback source '{dev['name']}'")
        try:
            default = sd.query_devices(kind="input")
        except sd.PortAudioError:
            return HealthCheckResult(
                name=name, passed=False, detail="No capture device available for loopback audio"
            )
        if device_name:
            return HealthCheckResult(
                name=name,
                passed=True,
                detail=f"'{device_name}' not in PortAudio (will use PIPEWIRE_NODE), default input: {default['name']}",
            )
        return HealthCheckResult(
            name=name,
            passed=True,
            detail=f"Default input: {default['name']} (set CAPTURE_DEVICE to pick the loopback source)",
        )
    except Exception as exc:
        return HealthCheckResult(name=name, passed=False, detail=str(exc))


def _check_api_keys(config: TranscriberConfig) -> HealthCheckResult:
    name = "api_keys"
    try:
        default_key = config.api_key_for(config.default_provider)
    except Exception as exc:
        return HealthCheckResult(name=name, passed=False, detail=str(exc))

    configured = [p for p in providers.PROVIDERS if config.api_key_for(p).strip()]
    if not default_key.strip():
        setting = providers.CREDENTIAL_SETTINGS[config.default_provider]
        return HealthCheckResult(
            name=name,
            passed=False,
            detail=f"Missing {setting} for default provider {config.default_provider}",
        )
    return HealthCheckResult(name=name, passed=True, detail=f"Configured: {', '.join(configured)}")


def _check_recall(config: TranscriberConfig) -> HealthCheckResult:
    name = "recall"
    if config.recall_client_token or config.recall_backend_url:
        return HealthCheckResult(name=name, passed=True, detail=f"Backend {config.recall_backend_url or '/api'}")
    if config.recall_api_key and config.recall_region:
        return HealthCheckResult(name=name, passed=True, detail=f"Region {config.recall_region}")
    return HealthCheckResult(name=name, passed=False, detail="Not configured (recall-start unavailable)")
