import pytest

from clawctl_provision import image
from clawctl_provision.errors import ImageBuildError


@pytest.fixture
def ready_host(host):
    host.user_exists = True
    host.dirs_ok = True
    return host


def test_fresh_build_clones_and_verifies(ready_host, principal) -> None:
    result = image.ensure_image(ready_host, principal, "main")

    assert result == "roboclaw/openclaw:local"
    assert ready_host.mutations == ["git clone", "docker build"]
    assert any("git clone --branch main https://github.com/openclaw/openclaw.git" in c for c in ready_host.commands)
    assert "docker run --rm --user 1000:1000 roboclaw/openclaw:local id -u" in ready_host.commands


def test_verified_image_is_reused(ready_host, principal) -> None:
    ready_host.image_built = True

    image.ensure_image(ready_host, principal, "main")

    assert ready_host.mutations == []


def test_unusable_image_is_rebuilt(ready_host, principal) -> None:
    ready_host.image_built = True
    ready_host.repo_cloned = True
    ready_host.fail_on["docker run --rm --user"] = 125
    # The rebuilt image verifies once the failure marker is cleared by the build.
    original = ready_host._dispatch

    def dispatch(command):
        if command.startswith("docker build -t"):
            ready_host.fail_on.clear()
        return original(command)

    ready_host._dispatch = dispatch

    image.ensure_image(ready_host, principal, "main")

    assert ready_host.mutations == ["docker rmi", "git fetch", "docker build"]


def test_build_failure_carries_log_tail(ready_host, principal) -> None:
    ready_host.fail_on["docker build -t"] = 1

    with pytest.raises(ImageBuildError) as exc_info:
        image.ensure_image(ready_host, principal, "main")

    assert "forced failure" in exc_info.value.details


def test_image_that_runs_as_wrong_uid_fails(ready_host, principal) -> None:
    ready_host.image_runs = False

    with pytest.raises(ImageBuildError, match="does not run as UID 1000"):
        image.ensure_image(ready_host, principal, "main")


def test_existing_checkout_is_updated(ready_host, principal) -> None:
    ready_host.repo_cloned = True

    image.sync_source(ready_host, principal, "dev")

    assert any("git reset --hard origin/dev" in c for c in ready_host.commands)
    assert ready_host.mutations == ["git fetch"]
