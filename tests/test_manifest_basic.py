"""
Tests for manifest loading, validation and the dependency graph.
"""

import pytest

from stackup.errors import CycleError, ManifestError
from stackup.manifest import (
    load_manifest, load_yaml, parse_manifest, plan_batches, render_manifest, start_order,
    validate_manifest,
)
from stackup.manifest.load import parse_port, parse_volume_mount


def _manifest(services, volumes=None, name="demo"):
    data = {"name": name, "services": services}
    if volumes is not None:
        data["volumes"] = volumes
    return parse_manifest(data)


class TestLoadManifest:
    """Test reading the rustapp compose file."""

    def test_load_rustapp(self, rustapp_dir):
        manifest = load_manifest(rustapp_dir / "compose.yaml")

        assert manifest.project == "rustapp"
        assert set(manifest.services) == {"rustapp", "db"}

        app = manifest.service("rustapp")
        assert app.image == "francescoxx/rustapp:1.0.0"
        assert app.build.dockerfile == "rust.dockerfile"
        assert app.build.args["DATABASE_URL"] == "postgres://postgres:postgres@db:5432/postgres"
        assert app.depends_on == ["db"]
        assert [p.to_short() for p in app.ports] == ["8080:8080"]

        db = manifest.service("db")
        assert db.environment["POSTGRES_DB"] == "postgres"
        assert db.volumes[0].source == "pgdata"
        assert db.volumes[0].target == "/var/lib/postgresql/data"
        assert "pgdata" in manifest.volumes

    def test_load_directory_finds_compose_file(self, rustapp_dir):
        manifest = load_manifest(rustapp_dir)
        assert manifest.path.endswith("compose.yaml")

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(ManifestError):
            load_manifest(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "compose.yaml"
        path.write_text("services: [unclosed\n")
        with pytest.raises(ManifestError, match="Invalid YAML"):
            load_manifest(path)

    def test_project_name_defaults_to_directory(self, tmp_path):
        project = tmp_path / "My App"
        project.mkdir()
        (project / "compose.yaml").write_text("services:\n  web:\n    image: nginx\n")
        manifest = load_manifest(project)
        assert manifest.project == "myapp"

    def test_depends_on_mapping_and_environment_list(self):
        manifest = _manifest({
            "db": {"image": "postgres:13"},
            "app": {
                "image": "app",
                "depends_on": {"db": {"condition": "service_started"}},
                "environment": ["A=1", "B=two"],
            },
        })
        app = manifest.service("app")
        assert app.depends_on == ["db"]
        assert app.environment == {"A": "1", "B": "two"}

    def test_naming_helpers(self):
        manifest = _manifest(
            {"db": {"image": "postgres:13", "volumes": ["pgdata:/data"]},
             "api": {"image": "api", "container_name": "backend"}},
            volumes={"pgdata": {}},
        )
        assert manifest.network_name == "demo_default"
        assert manifest.container_name("db") == "demo-db-1"
        assert manifest.container_name("api") == "backend"
        assert manifest.volume_name("pgdata") == "demo_pgdata"


class TestPorts:
    """Test port syntax handling."""

    def test_short_forms(self):
        assert parse_port("s", "8080:80").host_port == 8080
        assert parse_port("s", "8080:80").container_port == 80
        assert parse_port("s", "127.0.0.1:8080:80").host_ip == "127.0.0.1"
        assert parse_port("s", "53:53/udp").protocol == "udp"

    def test_container_only(self):
        port = parse_port("s", "5432")
        assert port.host_port is None
        assert not port.published

    def test_unquoted_short_port_stays_a_mapping(self, tmp_path):
        path = tmp_path / "compose.yaml"
        path.write_text("services:\n  ssh:\n    image: sshd\n    ports:\n      - 22:22\n      - 5432:5432\n")
        ports = load_manifest(path).service("ssh").ports
        assert [(p.host_port, p.container_port) for p in ports] == [(22, 22), (5432, 5432)]

    def test_unquoted_int_is_container_only(self):
        assert load_yaml("ports: [8080]")["ports"] == [8080]
        port = parse_port("s", 8080)
        assert (port.host_port, port.container_port) == (None, 8080)

    @pytest.mark.parametrize("key,value", [("ports", 8080), ("volumes", "pgdata:/data")])
    def test_non_list_field_rejected(self, key, value):
        with pytest.raises(ManifestError, match=f"{key} must be a list"):
            _manifest({"db": {"image": "postgres:13", key: value}})

    def test_long_form(self):
        port = parse_port("s", {"published": 8080, "target": 80})
        assert (port.host_port, port.container_port) == (8080, 80)

    def test_ranges_rejected(self):
        with pytest.raises(ManifestError):
            parse_port("s", "8000-8010:8000-8010")

    def test_out_of_range(self):
        with pytest.raises(ManifestError):
            parse_port("s", "70000:80")


class TestVolumeMounts:

    def test_named_and_bind(self):
        named = parse_volume_mount("db", "pgdata:/var/lib/postgresql/data")
        assert not named.is_bind
        bind = parse_volume_mount("db", "./init:/docker-entrypoint-initdb.d:ro")
        assert bind.is_bind
        assert bind.read_only


class TestGraph:
    """Test start batches and cycle detection."""

    def test_rustapp_batches(self, rustapp_dir):
        manifest = load_manifest(rustapp_dir)
        assert plan_batches(manifest) == [["db"], ["rustapp"]]
        assert start_order(manifest) == ["db", "rustapp"]

    def test_independent_services_share_a_batch(self):
        manifest = _manifest({
            "a": {"image": "x"}, "b": {"image": "x"},
            "c": {"image": "x", "depends_on": ["a", "b"]},
        })
        assert plan_batches(manifest) == [["a", "b"], ["c"]]

    def test_cycle(self):
        manifest = _manifest({
            "a": {"image": "x", "depends_on": ["c"]},
            "b": {"image": "x", "depends_on": ["a"]},
            "c": {"image": "x", "depends_on": ["b"]},
        })
        with pytest.raises(CycleError) as exc:
            plan_batches(manifest)
        assert exc.value.cycle[0] == exc.value.cycle[-1]
        assert set(exc.value.cycle) == {"a", "b", "c"}

    def test_self_dependency(self):
        manifest = _manifest({"a": {"image": "x", "depends_on": ["a"]}})
        with pytest.raises(CycleError):
            plan_batches(manifest)

    def test_undeclared_dependency(self):
        manifest = _manifest({"a": {"image": "x", "depends_on": ["ghost"]}})
        with pytest.raises(ManifestError, match="ghost"):
            plan_batches(manifest)


class TestValidation:
    """Test validation errors and warnings."""

    def test_rustapp_is_valid(self, rustapp_dir):
        report = validate_manifest(load_manifest(rustapp_dir))
        assert report.ok, report.errors
        assert report.warnings == []

    def test_errors(self):
        manifest = _manifest(
            {
                "a": {"image": "x", "ports": ["8080:80"], "volumes": ["data:/d"]},
                "b": {"image": "x", "ports": ["8080:81"], "volumes": ["data:/d", "ghost:/g"]},
                "c": {},
            },
            volumes={"data": {}},
        )
        report = validate_manifest(manifest)
        text = "\n".join(report.errors)
        assert "neither 'image' nor 'build'" in text
        assert "Host port 8080/tcp" in text
        assert "more than one service" in text
        assert "undeclared volume 'ghost'" in text
        with pytest.raises(ManifestError):
            report.raise_for_errors()

    def test_same_port_on_distinct_host_ips_is_allowed(self):
        manifest = _manifest({
            "a": {"image": "x", "ports": ["127.0.0.1:8080:80"]},
            "b": {"image": "x", "ports": ["127.0.0.2:8080:80"]},
        })
        assert validate_manifest(manifest).ok

    def test_wildcard_bind_clashes_with_specific_ip(self):
        manifest = _manifest({
            "a": {"image": "x", "ports": ["8080:80"]},
            "b": {"image": "x", "ports": ["127.0.0.1:8080:80"]},
        })
        report = validate_manifest(manifest)
        assert any("Host port 8080/tcp" in e for e in report.errors)

    def test_loopback_connection_string_warns(self):
        manifest = _manifest({
            "db": {"image": "postgres:13", "ports": ["5432:5432"]},
            "app": {
                "image": "app",
                "depends_on": ["db"],
                "environment": {"DATABASE_URL": "postgres://u:p@localhost:5432/db"},
            },
        })
        report = validate_manifest(manifest)
        assert report.ok
        assert any("localhost" in w for w in report.warnings)

    def test_connection_without_dependency_warns(self):
        manifest = _manifest({
            "db": {"image": "postgres:13"},
            "app": {"image": "app", "environment": {"DATABASE_URL": "postgres://u:p@db:5432/db"}},
        })
        report = validate_manifest(manifest)
        assert any("without depending on it" in w for w in report.warnings)

    def test_unmounted_volume_warns(self):
        manifest = _manifest({"a": {"image": "x"}}, volumes={"cache": {}})
        report = validate_manifest(manifest)
        assert report.ok
        assert any("cache" in w for w in report.warnings)

    def test_missing_recipe(self, rustapp_dir):
        (rustapp_dir / "backend" / "rust.dockerfile").unlink()
        report = validate_manifest(load_manifest(rustapp_dir))
        assert any("build recipe not found" in e for e in report.errors)

    def test_undeclared_build_arg_warns(self, rustapp_dir):
        compose = rustapp_dir / "compose.yaml"
        compose.write_text(compose.read_text().replace(
            "        DATABASE_URL: postgres://postgres:postgres@db:5432/postgres\n",
            "        DATABASE_URL: postgres://postgres:postgres@db:5432/postgres\n        EXTRA: one\n",
        ))
        report = validate_manifest(load_manifest(rustapp_dir))
        assert report.ok
        assert any("'EXTRA'" in w for w in report.warnings)


class TestRender:

    def test_render_round_trips_through_yaml(self, rustapp_dir):
        manifest = load_manifest(rustapp_dir)
        again = parse_manifest(load_yaml(render_manifest(manifest)))
        assert again.service("rustapp").depends_on == ["db"]
        assert again.service("db").ports[0].host_port == 5432
