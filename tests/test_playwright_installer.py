import pytest

from browser_pool.services import playwright_installer
from browser_pool.worker.protocol import EngineError


@pytest.fixture
def browsers_path(tmp_path, monkeypatch):
    path = tmp_path / "ms-playwright"
    monkeypatch.setenv("PLAYWRIGHT_BROWSERS_PATH", str(path))
    return path


def test_browsers_path_from_environment(browsers_path):
    assert playwright_installer.get_playwright_browsers_path() == browsers_path


def test_verify_requires_chromium_directory(browsers_path):
    assert playwright_installer.verify_playwright_browsers() is False

    browsers_path.mkdir()
    assert playwright_installer.verify_playwright_browsers() is False

    (browsers_path / "chromium-1117").mkdir()
    assert playwright_installer.verify_playwright_browsers() is True


async def test_ensure_skips_install_when_present(browsers_path, monkeypatch):
    (browsers_path / "chromium-1117").mkdir(parents=True)

    async def fail_install(*args, **kwargs):
        raise AssertionError("should not install")

    monkeypatch.setattr(playwright_installer, "install_playwright_browsers", fail_install)

    await playwright_installer.ensure_playwright_installed()


async def test_ensure_raises_when_install_fails(browsers_path, monkeypatch):
    async def failed_install(*args, **kwargs):
        return False, "Playwright installation failed with code 1"

    monkeypatch.setattr(playwright_installer, "install_playwright_browsers", failed_install)

    with pytest.raises(EngineError, match="code 1"):
        await playwright_installer.ensure_playwright_installed()


async def test_failed_install_removes_only_its_own_download(browsers_path, monkeypatch):
    for name in ("firefox-1466", "ffmpeg-1010", "chromium-1105"):
        (browsers_path / name).mkdir(parents=True)

    class FailingProcess:
        returncode = 1

        async def communicate(self):
            # Partial download left behind by the failed run
            (browsers_path / "chromium-1117").mkdir()
            return b"network unreachable", None

    async def fake_exec(*args, **kwargs):
        assert kwargs["env"]["PLAYWRIGHT_BROWSERS_PATH"] == str(browsers_path)
        return FailingProcess()

    monkeypatch.setattr(playwright_installer.asyncio, "create_subprocess_exec", fake_exec)

    success, message = await playwright_installer.install_playwright_browsers()

    assert success is False
    assert "network unreachable" in message
    assert not (browsers_path / "chromium-1117").exists()
    assert (browsers_path / "chromium-1105").exists()
    assert (browsers_path / "firefox-1466").exists()
    assert (browsers_path / "ffmpeg-1010").exists()
