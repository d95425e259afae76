"""
Tests for the Builder running multi-stage recipes on the local engine.
"""

import pytest

from stackup.builder import Builder, resolve_build_args
from stackup.engines import inspect_binary
from stackup.errors import BuildError, ImageNotFoundError
from stackup.events import EventTypes, read_events
from stackup.ids import new_run_id
from stackup.manifest import load_manifest
from stackup.recipes import get_template, parse_recipe
from stackup.state import create_run_dir

DATABASE_URL = "postgres://postgres:postgres@db:5432/postgres"


def _build_rustapp(engine, rustapp_dir, run_id=None):
    manifest = load_manifest(rustapp_dir)
    return Builder(engine, run_id=run_id).build_service(manifest, manifest.service("rustapp"))


class TestRuntimeImage:
    """The runtime image carries only the final stage."""

    def test_only_binary_and_base_os(self, engine, rustapp_dir):
        image = _build_rustapp(engine, rustapp_dir)

        assert image.ref == "francescoxx/rustapp:1.0.0"
        assert "/usr/local/bin/rustapp" in image.filesystem
        assert not any(p.startswith("/usr/local/cargo") for p in image.filesystem)
        assert not any(p.startswith("/usr/local/rustup") for p in image.filesystem)
        assert not any(p.startswith("/app") for p in image.filesystem)
        assert "/etc/os-release" in image.filesystem
        assert image.workdir == "/usr/local/bin"
        assert image.default_command == ["./rustapp"]

    def test_binary_embeds_connection_string(self, engine, rustapp_dir):
        image = _build_rustapp(engine, rustapp_dir)
        info = inspect_binary(image.filesystem["/usr/local/bin/rustapp"])
        assert info["toolchain"] == "cargo"
        assert info["embedded_env"]["DATABASE_URL"] == DATABASE_URL
        assert image.build_args["DATABASE_URL"] == DATABASE_URL

    def test_rebuild_is_idempotent(self, engine, rustapp_dir):
        first = _build_rustapp(engine, rustapp_dir)
        second = _build_rustapp(engine, rustapp_dir)
        assert first.digest == second.digest
        assert first.build_args == second.build_args

    def test_source_change_changes_digest(self, engine, rustapp_dir):
        first = _build_rustapp(engine, rustapp_dir)
        main_rs = rustapp_dir / "backend" / "src" / "main.rs"
        main_rs.write_text(main_rs.read_text() + "\n// touched\n")
        second = _build_rustapp(engine, rustapp_dir)
        assert first.digest != second.digest

    def test_template_recipe_exports_arg_in_runtime(self, engine, rustapp_dir):
        context = rustapp_dir / "backend"
        recipe = parse_recipe(get_template("rust").render(str(context), ["DATABASE_URL"]))
        image = Builder(engine).build(recipe, context, {"DATABASE_URL": DATABASE_URL}, "rustapp:tmpl")
        assert image.env["DATABASE_URL"] == DATABASE_URL
        assert not any(p.startswith("/app") for p in image.filesystem)


class TestBuildFailures:
    """Any stage failure aborts the build and records no image."""

    def test_bad_copy_path_from_builder(self, engine, rustapp_dir):
        dockerfile = rustapp_dir / "backend" / "rust.dockerfile"
        dockerfile.write_text(dockerfile.read_text().replace(
            "/app/target/release/rustapp", "/app/target/release/missing"
        ))
        with pytest.raises(BuildError, match="not found in stage 'builder'"):
            _build_rustapp(engine, rustapp_dir)
        assert "francescoxx/rustapp:1.0.0" not in engine.images

    def test_unknown_from_stage(self, engine, rustapp_dir):
        dockerfile = rustapp_dir / "backend" / "rust.dockerfile"
        dockerfile.write_text(dockerfile.read_text().replace("--from=builder", "--from=compiler"))
        with pytest.raises(BuildError, match="unknown stage 'compiler'"):
            _build_rustapp(engine, rustapp_dir)
        assert "francescoxx/rustapp:1.0.0" not in engine.images

    def test_compile_error(self, engine, rustapp_dir):
        main_rs = rustapp_dir / "backend" / "src" / "main.rs"
        main_rs.write_text('compile_error!("broken");\n')
        with pytest.raises(BuildError, match="could not compile"):
            _build_rustapp(engine, rustapp_dir)

    def test_toolchain_missing_in_stage(self, engine, tmp_path):
        (tmp_path / "Cargo.toml").write_text('[package]\nname = "x"\n')
        recipe = parse_recipe("FROM debian:buster-slim\nCOPY . .\nRUN cargo build --release\n")
        with pytest.raises(BuildError, match="cargo: not found"):
            Builder(engine).build(recipe, tmp_path, {}, "x:latest")

    def test_unknown_base_image(self, engine, tmp_path):
        recipe = parse_recipe("FROM nosuch/image:1\n")
        with pytest.raises(ImageNotFoundError):
            Builder(engine).build(recipe, tmp_path, {}, "x:latest")

    def test_missing_context(self, engine, tmp_path):
        recipe = parse_recipe("FROM debian:buster-slim\n")
        with pytest.raises(BuildError, match="context not found"):
            Builder(engine).build(recipe, tmp_path / "gone", {}, "x:latest")


class TestBuildArgs:

    def test_undeclared_args_dropped(self):
        recipe = parse_recipe("FROM debian\nARG KEEP\n")
        assert resolve_build_args(recipe, {"KEEP": "1", "DROP": "2"}) == {"KEEP": "1"}

    def test_arg_default_and_override(self, engine, tmp_path):
        recipe = parse_recipe(
            "FROM debian:buster-slim\n"
            "ARG MODE=debug\n"
            "ARG EMPTY\n"
            "ENV MODE=$MODE EMPTY=$EMPTY\n"
        )
        image = Builder(engine).build(recipe, tmp_path, {}, "a:1")
        assert image.env["MODE"] == "debug"
        assert image.env["EMPTY"] == ""
        image = Builder(engine).build(recipe, tmp_path, {"MODE": "release"}, "a:2")
        assert image.env["MODE"] == "release"


class TestBuildEvents:

    def test_events_emitted(self, engine, rustapp_dir, stackup_home):
        run_id = new_run_id()
        create_run_dir(run_id)
        _build_rustapp(engine, rustapp_dir, run_id=run_id)

        types = [e["type"] for e in read_events(run_id)]
        assert types[0] == EventTypes.BUILD_START
        assert types.count(EventTypes.BUILD_STAGE) == 2
        assert EventTypes.BUILD_LINE in types
        assert types[-1] == EventTypes.BUILD_DONE

    def test_failure_event(self, engine, rustapp_dir, stackup_home):
        run_id = new_run_id()
        create_run_dir(run_id)
        (rustapp_dir / "backend" / "src" / "main.rs").write_text('compile_error!("x");\n')
        with pytest.raises(BuildError):
            _build_rustapp(engine, rustapp_dir, run_id=run_id)

        last = read_events(run_id)[-1]
        assert last["type"] == EventTypes.BUILD_FAILED
        assert last["data"]["service"] == "rustapp"
        assert last["data"]["code"] == "build"
