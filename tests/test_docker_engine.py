"""
Tests for the docker CLI engine with subprocess mocked out.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from stackup.engines.base import ContainerSpec
from stackup.engines.docker import DockerEngine
from stackup.errors import BuildError, EngineError, ImageNotFoundError, PortConflictError
from stackup.manifest.models import PortMapping, VolumeMount
from stackup.recipes import parse_recipe


class FakeDocker:
    """Stands in for subprocess.Popen; answers by docker subcommand."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    def __call__(self, command, **kwargs):
        args = command[1:]
        self.calls.append(args)
        rc, output = self._lookup(args)
        process = MagicMock()
        process.stdout = iter(line + "\n" for line in output.splitlines())
        process.returncode = rc
        return process

    def _lookup(self, args):
        for key in (" ".join(args[:2]), args[0]):
            if key in self.responses:
                return self.responses[key]
        return 0, ""


def _inspect_json():
    return json.dumps({
        "Id": "sha256:abc",
        "Config": {
            "Env": ["PATH=/usr/bin"],
            "WorkingDir": "/usr/local/bin",
            "Cmd": ["./rustapp"],
            "ExposedPorts": {"8080/tcp": {}},
        },
    })


RECIPE = (
    "FROM rust:1.69-buster AS builder\n"
    "ARG DATABASE_URL\n"
    "RUN cargo build --release\n"
    "FROM debian:buster-slim\n"
    "COPY --from=builder /app/target/release/rustapp .\n"
)


class TestBuild:

    def test_build_passes_args_and_inspects(self, tmp_path):
        fake = FakeDocker({"image inspect": (0, _inspect_json())})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            image = DockerEngine("docker").build(
                parse_recipe(RECIPE), tmp_path, {"DATABASE_URL": "postgres://db/x"}, "app:1")

        build_args = fake.calls[0]
        assert build_args[0] == "build"
        i = build_args.index("--build-arg")
        assert build_args[i + 1] == "DATABASE_URL=postgres://db/x"
        assert build_args[-1] == str(tmp_path)
        assert image.digest == "sha256:abc"
        assert image.workdir == "/usr/local/bin"
        assert image.exposed_ports == ["8080/tcp"]
        assert image.build_args == {"DATABASE_URL": "postgres://db/x"}

    def test_build_failure_is_classified(self, tmp_path):
        fake = FakeDocker({"build": (1, "error: could not compile `rustapp`")})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            with pytest.raises(BuildError) as exc:
                DockerEngine("docker").build(parse_recipe(RECIPE), tmp_path, {}, "app:1")
        assert "could not compile" in exc.value.message
        assert exc.value.hint == "Fix the compile error; no image was produced"

    def test_base_image_missing(self, tmp_path):
        fake = FakeDocker({"build": (1, "pull access denied for nosuch/rust")})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            with pytest.raises(ImageNotFoundError):
                DockerEngine("docker").build(parse_recipe(RECIPE), tmp_path, {}, "app:1")

    def test_unreadable_inspect_output(self, tmp_path):
        fake = FakeDocker({"image inspect": (0, "not json")})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            with pytest.raises(EngineError, match="Unreadable image inspect output"):
                DockerEngine("docker").build(parse_recipe(RECIPE), tmp_path, {}, "app:1")


class TestContainers:

    def _spec(self):
        return ContainerSpec(
            name="rustapp-db-1",
            service="db",
            image="postgres:13",
            network="rustapp_default",
            aliases=["db"],
            ports=[PortMapping(host_port=5432, container_port=5432)],
            mounts=[VolumeMount(source="rustapp_pgdata", target="/var/lib/postgresql/data")],
            environment={"POSTGRES_USER": "postgres"},
            labels={"stackup.project": "rustapp"},
        )

    def test_run_arguments(self):
        fake = FakeDocker({"run": (0, "deadbeef")})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            container = DockerEngine("docker").start_container(self._spec())

        args = fake.calls[0]
        assert args[:4] == ["run", "-d", "--name", "rustapp-db-1"]
        assert "--network-alias" in args and "db" in args
        assert "5432:5432" in args
        assert "rustapp_pgdata:/var/lib/postgresql/data" in args
        assert "POSTGRES_USER=postgres" in args
        assert args[-1] == "postgres:13"
        assert container.id == "deadbeef"
        assert container.is_running

    def test_port_conflict(self):
        fake = FakeDocker({"run": (125, "Bind for 0.0.0.0:5432 failed: port is already allocated")})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            with pytest.raises(PortConflictError) as exc:
                DockerEngine("docker").start_container(self._spec())
        assert exc.value.host_port == 5432
        assert exc.value.service == "db"
        # the half-created container is cleaned up
        assert fake.calls[1] == ["rm", "-f", "rustapp-db-1"]

    def test_list_containers_by_project(self):
        row = {"Names": "rustapp-db-1", "Image": "postgres:13", "State": "running", "ID": "1",
               "Labels": "stackup.project=rustapp,stackup.service=db"}
        fake = FakeDocker({"ps": (0, json.dumps(row))})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            containers = DockerEngine("docker").list_containers(project="rustapp")
        assert "label=stackup.project=rustapp" in fake.calls[0]
        assert containers[0].service == "db"
        assert containers[0].is_running


class TestImagesAndVolumes:

    def test_pull_failure(self):
        fake = FakeDocker({
            "image inspect": (1, "No such image"),
            "pull": (1, "Error response from daemon: pull access denied for nosuch/image"),
        })
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            with pytest.raises(ImageNotFoundError):
                DockerEngine("docker").ensure_image("nosuch/image")

    def test_create_volume_is_idempotent(self):
        fake = FakeDocker({"volume inspect": (0, "[]")})
        with patch("stackup.engines.docker.subprocess.Popen", fake):
            assert DockerEngine("docker").create_volume("rustapp_pgdata") is False
        assert fake.calls == [["volume", "inspect", "rustapp_pgdata"]]


def test_missing_docker_cli():
    with patch("stackup.engines.docker.subprocess.Popen", side_effect=FileNotFoundError()):
        with pytest.raises(EngineError) as exc:
            DockerEngine("/nonexistent/docker").volume_exists("x")
    assert "Docker CLI not found" in exc.value.message


def test_docker_cli_not_executable():
    with patch("stackup.engines.docker.subprocess.Popen", side_effect=PermissionError("denied")):
        with pytest.raises(EngineError) as exc:
            DockerEngine("/usr/bin/docker").volume_exists("x")
    assert "Could not run /usr/bin/docker" in exc.value.message
    assert exc.value.hint
