import io
import json
import threading
import time

import pytest

from qr_wifi import cli
from qr_wifi.permissions import PermissionGate, PermissionStatus
from qr_wifi.wifi import AdapterError, WiFiBackend, WiFiNetwork


class FakeBackend(WiFiBackend):
    instances: list["FakeBackend"] = []

    def __init__(self, interface: str | None = None) -> None:
        self.interface = interface
        self.associate_calls: list[tuple[str, str | None]] = []
        self.fail_with: AdapterError | None = None
        FakeBackend.instances.append(self)

    def has_interface(self) -> bool:
        return True

    def scan(self, ssid: str) -> list[WiFiNetwork]:
        if ssid == "Nowhere":
            return []
        return [WiFiNetwork(ssid=ssid, signal=50)]

    def associate(self, network: WiFiNetwork, secret: str | None) -> None:
        self.associate_calls.append((network.ssid, secret))


class DeniedGate(PermissionGate):
    def __init__(self) -> None:
        super().__init__()
        self.current = PermissionStatus.DENIED
        self.settings_opened = 0
        self.closed = False

    def status(self) -> PermissionStatus:
        return self.current

    def open_settings_panel(self) -> None:
        self.settings_opened += 1

    def grant(self) -> None:
        self.current = PermissionStatus.AUTHORIZED
        self._observe(PermissionStatus.AUTHORIZED)

    def start_watching(self) -> None:
        threading.Timer(0.05, self.grant).start()

    def close(self) -> None:
        self.closed = True


class NeverGrantedGate(DeniedGate):
    def start_watching(self) -> None:
        return None


@pytest.fixture(autouse=True)
def fake_backend(monkeypatch: pytest.MonkeyPatch) -> type[FakeBackend]:
    FakeBackend.instances = []
    monkeypatch.setattr("qr_wifi.cli.NMCLIBackend", FakeBackend)
    monkeypatch.setattr("qr_wifi.cli.NMCLIPermissionGate", DeniedGate)
    for name in ("QRWIFI_MAX_RETRIES", "QRWIFI_RESUME_DELAY", "QRWIFI_INTERFACE"):
        monkeypatch.delenv(name, raising=False)
    return FakeBackend


def test_parse_prints_summary(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["parse", "WIFI:S:Home;T:WPA;P:pw;;"]) == 0

    assert capsys.readouterr().out.strip().splitlines() == [
        "SSID: Home",
        "Password: pw",
        "Security: WPA",
    ]


def test_parse_json_hides_secret_by_default(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["parse", "--json", "WIFI:S:Home;T:WPA;P:pw;;"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["ssid"] == "Home"
    assert "secret" not in payload


def test_parse_rejects_invalid_payload(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["parse", "hello"]) == 1
    assert "Not a Wi-Fi QR payload" in capsys.readouterr().err


def test_connect_without_permission_check(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(
        ["connect", "--no-permission-check", "--interface", "wlan1", "WIFI:S:Home;T:WPA;P:pw;;"]
    )

    assert code == cli.EXIT_CONNECTED
    (backend,) = FakeBackend.instances
    assert backend.interface == "wlan1"
    assert backend.associate_calls == [("Home", "pw")]
    captured = capsys.readouterr()
    assert "Connected to Home" in captured.out
    assert "[started]" in captured.err


def test_connect_reports_failure(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["connect", "--no-permission-check", "WIFI:S:Nowhere;T:nopass;;"])

    assert code == cli.EXIT_FAILED
    assert "Unable to join Nowhere" in capsys.readouterr().err


def test_connect_defers_when_permission_missing() -> None:
    code = cli.main(["connect", "--prompt", "open", "WIFI:S:Home;T:WPA;P:pw;;"])

    assert code == cli.EXIT_DEFERRED
    assert FakeBackend.instances[0].associate_calls == []


def test_connect_declined_permission_fails() -> None:
    code = cli.main(["connect", "--prompt", "decline", "WIFI:S:Home;T:WPA;P:pw;;"])

    assert code == cli.EXIT_FAILED


def test_connect_waits_for_permission_and_resumes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QRWIFI_RESUME_DELAY", "0")

    code = cli.main(["connect", "--prompt", "open", "--wait", "5", "WIFI:S:Home;T:WPA;P:pw;;"])

    assert code == cli.EXIT_CONNECTED
    assert FakeBackend.instances[0].associate_calls == [("Home", "pw")]


def test_ask_prompt_reads_answer() -> None:
    import asyncio

    from qr_wifi.credentials import Credential

    output = io.StringIO()
    prompt = cli.ask_prompt(io.StringIO("yes\n"), output)

    assert asyncio.run(prompt(Credential(ssid="Home"))) is True
    assert "Home" in output.getvalue()
    assert asyncio.run(cli.ask_prompt(io.StringIO("\n"), output)(Credential(ssid="Home"))) is False


def test_watch_connects_first_valid_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("\nnot a code\nWIFI:S:Cafe;T:nopass;;\nWIFI:S:Home;;\n"))

    code = cli.main(["watch", "--no-permission-check"])

    assert code == cli.EXIT_CONNECTED
    assert FakeBackend.instances[0].associate_calls == [("Cafe", None)]


def test_watch_without_payload_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("\n\nhello\n"))

    assert cli.main(["watch", "--no-permission-check"]) == cli.EXIT_FAILED


def test_invalid_config_file_falls_back_to_defaults(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "config.json"
    config.write_text("{broken", encoding="utf-8")

    code = cli.main(["--config", str(config), "connect", "--no-permission-check", "WIFI:S:Home;;"])

    assert code == cli.EXIT_CONNECTED


class SlowStdin:
    def __init__(self, lines: list[str], pause: float) -> None:
        self._lines = lines
        self._pause = pause

    def __iter__(self):
        for line in self._lines:
            yield line
            time.sleep(self._pause)


def test_watch_resumes_deferred_attempt_while_waiting_for_input(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QRWIFI_RESUME_DELAY", "0")
    monkeypatch.setattr("sys.stdin", SlowStdin(["WIFI:S:Home;T:WPA;P:pw;;\n"], 0.5))

    code = cli.main(["watch", "--keep-going", "--prompt", "open"])

    assert code == cli.EXIT_CONNECTED
    assert FakeBackend.instances[0].associate_calls == [("Home", "pw")]


def test_watch_reports_deferral_when_permission_never_arrives(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("qr_wifi.cli.NMCLIPermissionGate", NeverGrantedGate)
    monkeypatch.setattr("sys.stdin", io.StringIO("WIFI:S:Home;T:WPA;P:pw;;\n"))

    assert cli.main(["watch", "--prompt", "open"]) == cli.EXIT_DEFERRED
    assert FakeBackend.instances[0].associate_calls == []
