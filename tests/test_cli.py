import pytest
from click.testing import CliRunner
from conftest import FakeRegistry

import ocicopy.__main__
from ocicopy.__main__ import cli


@pytest.fixture
def registries(image, source, destination, monkeypatch, tmp_path):
    """Route the CLI clients to the fake registries"""
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path))
    # Keep the CLI handlers off the loggers of later tests
    quiet = {"version": 1, "disable_existing_loggers": False}
    monkeypatch.setattr(ocicopy.__main__, "LOGGING_CONFIG", quiet)
    configs = {}

    class Fake:
        def __init__(self, config):
            configs[config.url] = config
            self.registry = {"src.test": source, "dst.test": destination}[config.url]

        def __getattr__(self, name):
            return getattr(self.registry, name)

        def close(self):
            pass

    monkeypatch.setattr(ocicopy.__main__, "Client", Fake)
    return configs


def run(*args):
    return CliRunner().invoke(cli, ["--src", "src.test", "--dest", "dst.test", *args])


def test_copy(registries, image, destination):
    result = run("copy", "--repo", "library/app", "--tag", "1.0")

    assert result.exit_code == 0, result.output
    assert "successfully" in result.output
    assert ("library/app", "1.0") in destination.manifests


def test_copy_overrides(registries, image, destination):
    result = run(
        "--dest-insecure",
        "--timeout",
        "5",
        "copy",
        "--src-repo",
        "library/app",
        "--src-tag",
        "1.0",
        "--dest-repo",
        "mirror/app",
    )

    assert result.exit_code == 0, result.output
    assert ("mirror/app", "latest") in destination.manifests
    assert registries["dst.test"].insecure
    assert not registries["src.test"].insecure
    assert registries["src.test"].timeout == 5


def test_copy_password_from_environment(registries, monkeypatch):
    monkeypatch.setenv("OCICOPY_SRC_PASSWORD", "hunter2")

    run("--src-username", "me", "copy", "--repo", "library/app", "--tag", "1.0")

    assert registries["src.test"].username == "me"
    assert registries["src.test"].password == "hunter2"
    assert registries["dst.test"].password is None


def test_copy_requires_a_repository(registries):
    result = run("copy")

    assert result.exit_code == 2
    assert "source repository is required" in result.output


def test_copy_failure_exit_code(registries, image, destination):
    destination.drop_uploads.add(image.layers[0].digest)

    result = run("copy", "--repo", "library/app", "--tag", "1.0")

    assert result.exit_code == 1
    assert image.layers[0].digest in result.output
    assert "phase=verify" in result.output
    assert not destination.manifests


def test_copy_invalid_manifest_exit_code(registries, source):
    source.manifests[("library/app", "old")] = source.manifests[
        ("library/app", "1.0")
    ].model_copy(update={"schemaVersion": 1})

    result = run("copy", "--repo", "library/app", "--tag", "old")

    assert result.exit_code == 1
    assert "schemaVersion" in result.output


def test_sync(registries, image, source, destination, monkeypatch):
    monkeypatch.setattr(
        FakeRegistry, "catalog", lambda self: ["library/app"], raising=False
    )
    monkeypatch.setattr(FakeRegistry, "tags", lambda self, name: ["1.0"], raising=False)

    result = run("sync")

    assert result.exit_code == 0, result.output
    assert ("library/app", "1.0") in destination.manifests


def test_sync_failure_exit_code(registries, image, source, destination, monkeypatch):
    monkeypatch.setattr(
        FakeRegistry, "catalog", lambda self: ["library/app"], raising=False
    )
    monkeypatch.setattr(
        FakeRegistry, "tags", lambda self, name: ["1.0", "gone"], raising=False
    )

    result = run("sync")

    assert result.exit_code == 1
    assert "library/app:gone" in result.output
    assert ("library/app", "1.0") in destination.manifests
