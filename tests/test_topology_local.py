"""
Bring-up scenarios for the rustapp topology on the local engine.
"""

from unittest.mock import patch

import pytest

from stackup.engines import inspect_binary
from stackup.errors import CycleError, ManifestError, StateError
from stackup.events import EventTypes, read_events, service_states
from stackup.ids import new_run_id
from stackup.manifest import load_manifest, parse_connection_string, parse_manifest
from stackup.state import create_run_dir, read_outputs_json
from stackup.topology import ServiceState, TopologyManager

PGDATA = "/var/lib/postgresql/data"


@pytest.fixture
def manifest(rustapp_dir):
    return load_manifest(rustapp_dir)


class TestRustappScenario:
    """Database and application with a depends_on edge."""

    def test_database_starts_before_application(self, engine, manifest):
        result = TopologyManager(manifest, engine).up()

        assert result.ok
        assert result.launch_order == ["db", "rustapp"]
        db = engine.containers["db"]
        app = engine.containers["rustapp"]
        assert db.launch_seq < app.launch_seq
        assert result.states == {"rustapp": ServiceState.RUNNING, "db": ServiceState.RUNNING}

    def test_embedded_connection_string_resolves_db(self, engine, manifest):
        TopologyManager(manifest, engine).up()

        app = engine.containers["rustapp"]
        binary = app.read("/usr/local/bin/rustapp")
        url = inspect_binary(binary)["embedded_env"]["DATABASE_URL"]
        conn = parse_connection_string(url)

        target = engine.resolve(manifest.network_name, conn.host)
        assert target is not None
        assert target.name == "db"
        assert target.is_running
        assert conn.effective_port in [p.container_port for p in target.ports]

    def test_published_ports_accept_connections(self, engine, manifest):
        result = TopologyManager(manifest, engine).up()
        assert engine.accepts_connections(8080)
        assert engine.accepts_connections(5432)
        assert result.endpoints == {"rustapp": ["localhost:8080"], "db": ["localhost:5432"]}

    def test_containers_are_labelled(self, engine, manifest):
        TopologyManager(manifest, engine, run_id=None).up()
        containers = engine.list_containers(project="rustapp")
        assert [c.name for c in containers] == ["db", "rustapp"]
        assert containers[0].labels["stackup.service"] == "db"

    def test_volume_survives_container_recreation(self, engine, manifest):
        TopologyManager(manifest, engine).up()
        assert engine.volume_exists("rustapp_pgdata")
        engine.containers["db"].write(f"{PGDATA}/PG_VERSION", b"13")

        manager = TopologyManager(manifest, engine)
        manager.down()
        assert "db" not in engine.containers
        assert engine.volume_exists("rustapp_pgdata")

        TopologyManager(manifest, engine).up()
        assert engine.containers["db"].read(f"{PGDATA}/PG_VERSION") == b"13"

    def test_remove_volume_destroys_data(self, engine, manifest):
        TopologyManager(manifest, engine).up()
        engine.containers["db"].write(f"{PGDATA}/PG_VERSION", b"13")

        manager = TopologyManager(manifest, engine)
        manager.down()
        manager.remove_volume("pgdata")
        assert not engine.volume_exists("rustapp_pgdata")

        TopologyManager(manifest, engine).up()
        assert engine.containers["db"].read(f"{PGDATA}/PG_VERSION") is None

    def test_down_with_volumes(self, engine, manifest):
        TopologyManager(manifest, engine).up()
        outcome = TopologyManager(manifest, engine).down(remove_volumes=True)
        assert outcome["removed"] == ["rustapp", "db"]
        assert outcome["volumes_removed"] == ["rustapp_pgdata"]
        assert engine.containers == {}

    def test_up_twice_recreates_containers(self, engine, manifest):
        TopologyManager(manifest, engine).up()
        first_seq = engine.containers["db"].launch_seq
        result = TopologyManager(manifest, engine).up()
        assert result.ok
        assert engine.containers["db"].launch_seq > first_seq


class TestWithoutDependency:
    """No depends_on: both services land in the first batch."""

    def test_both_start_in_one_batch(self, engine, rustapp_dir):
        compose = rustapp_dir / "compose.yaml"
        compose.write_text(compose.read_text().replace("    depends_on:\n      - db\n", ""))
        manifest = load_manifest(rustapp_dir)

        manager = TopologyManager(manifest, engine)
        assert manager.plan() == [["db", "rustapp"]]

        result = manager.up()
        assert result.ok
        assert set(result.launch_order) == {"db", "rustapp"}
        assert any("without depending on it" in w for w in result.warnings)


class TestFailures:
    """Failures surface per service; nothing is rolled back."""

    def test_port_conflict_leaves_dependent_waiting(self, engine, manifest):
        engine.occupy_port(5432, holder="host-postgres")
        result = TopologyManager(manifest, engine).up()

        assert not result.ok
        assert result.states["db"] == ServiceState.FAILED
        assert result.states["rustapp"] == ServiceState.WAITING
        assert result.errors["db"]["code"] == "port_conflict"
        assert "5432" in result.errors["db"]["message"]
        assert result.blocked == {"rustapp": ["db"]}
        assert "rustapp" not in engine.containers

    def test_build_failure_starts_nothing_for_that_service(self, engine, rustapp_dir):
        dockerfile = rustapp_dir / "backend" / "rust.dockerfile"
        dockerfile.write_text(dockerfile.read_text().replace(
            "/app/target/release/rustapp", "/app/target/release/nope"
        ))
        result = TopologyManager(load_manifest(rustapp_dir), engine).up()

        assert result.states["rustapp"] == ServiceState.FAILED
        assert result.states["db"] == ServiceState.RUNNING
        assert result.errors["rustapp"]["code"] == "build"
        assert "rustapp" not in engine.containers
        assert "francescoxx/rustapp:1.0.0" not in engine.images

    def test_prebuilt_image_pull_failure(self, engine):
        manifest = parse_manifest({
            "name": "demo",
            "services": {"cache": {"image": "redis:7"}},
        })
        result = TopologyManager(manifest, engine).up()
        assert result.states["cache"] == ServiceState.FAILED
        assert result.errors["cache"]["code"] == "image_not_found"

    def test_unexpected_start_error_fails_the_service(self, engine, manifest, stackup_home):
        real_start = engine.start_container

        def start_container(spec):
            if spec.service == "db":
                raise OSError("docker socket reset")
            return real_start(spec)

        run_id = new_run_id()
        create_run_dir(run_id)
        with patch.object(engine, "start_container", side_effect=start_container):
            result = TopologyManager(manifest, engine, run_id=run_id).up()

        assert result.states["db"] == ServiceState.FAILED
        assert result.states["rustapp"] == ServiceState.WAITING
        assert result.errors["db"]["code"] == "start"
        assert "docker socket reset" in result.errors["db"]["message"]
        assert read_events(run_id)[-1]["type"] == EventTypes.DONE
        assert read_outputs_json(run_id)["states"]["db"] == "failed"

    def test_unexpected_build_error_fails_the_service(self, engine, manifest):
        with patch.object(engine, "build", side_effect=RuntimeError("disk full")):
            result = TopologyManager(manifest, engine).up()

        assert result.states["rustapp"] == ServiceState.FAILED
        assert result.states["db"] == ServiceState.RUNNING
        assert result.errors["rustapp"]["code"] == "build"

    def test_cycle_aborts_before_anything_starts(self, engine):
        manifest = parse_manifest({
            "name": "demo",
            "services": {
                "a": {"image": "postgres:13", "depends_on": ["b"]},
                "b": {"image": "postgres:13", "depends_on": ["a"]},
            },
        })
        with pytest.raises(CycleError):
            TopologyManager(manifest, engine).up()
        assert engine.containers == {}
        assert engine.networks == {}

    def test_invalid_manifest_aborts(self, engine):
        manifest = parse_manifest({
            "name": "demo",
            "services": {"db": {"image": "postgres:13", "volumes": ["ghost:/data"]}},
        })
        with pytest.raises(ManifestError):
            TopologyManager(manifest, engine).up()
        assert engine.containers == {}


class TestCancellation:

    def test_cancel_keeps_started_services(self, engine, manifest):
        manager = TopologyManager(manifest, engine)
        start = engine.start_container

        def start_then_cancel(spec):
            container = start(spec)
            manager.cancel()
            return container

        engine.start_container = start_then_cancel
        result = manager.up()

        assert result.cancelled
        assert not result.ok
        assert result.states["db"] == ServiceState.RUNNING
        assert result.states["rustapp"] == ServiceState.WAITING
        assert engine.containers["db"].is_running
        assert "rustapp" not in engine.containers


class TestStateMachine:

    def test_illegal_transition(self, engine, manifest):
        manager = TopologyManager(manifest, engine)
        with pytest.raises(StateError):
            manager._transition("db", ServiceState.RUNNING)

    def test_history_follows_lifecycle(self, engine, manifest):
        manager = TopologyManager(manifest, engine)
        manager.up()
        history = [state for state, _ in manager.status["rustapp"].history]
        assert history == ["building", "waiting", "starting", "running"]
        history = [state for state, _ in manager.status["db"].history]
        assert history == ["waiting", "starting", "running"]


class TestRunRecords:

    def test_events_and_outputs(self, engine, manifest, stackup_home):
        run_id = new_run_id()
        create_run_dir(run_id)
        TopologyManager(manifest, engine, run_id=run_id).up()

        events = read_events(run_id)
        types = [e["type"] for e in events]
        assert types[0] == EventTypes.PLAN
        assert EventTypes.NETWORK_CREATED in types
        assert EventTypes.VOLUME_CREATED in types
        assert types[-1] == EventTypes.DONE
        assert service_states(read_events(run_id)) == {"rustapp": "running", "db": "running"}

        outputs = read_outputs_json(run_id)
        assert outputs["ok"] is True
        assert outputs["launch_order"] == ["db", "rustapp"]

    def test_cancelled_event(self, engine, manifest, stackup_home):
        run_id = new_run_id()
        create_run_dir(run_id)
        manager = TopologyManager(manifest, engine, run_id=run_id)
        manager.cancel()
        result = manager.up()
        assert result.cancelled
        assert read_events(run_id)[-1]["type"] == EventTypes.CANCELLED
        assert engine.containers == {}
