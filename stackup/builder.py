"""
Builder/Packager: turn a build recipe and its context into a runtime image.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .engines.base import Engine, Image
from .errors import BuildError, RecipeError, StackupError
from .events import emit_event, EventTypes
from .manifest.models import Manifest, ServiceSpec
from .recipes import BuildRecipe, check_recipe, parse_recipe

logger = logging.getLogger(__name__)


def resolve_build_args(recipe: BuildRecipe, supplied: Dict[str, str]) -> Dict[str, str]:
    """
    Keep the supplied build arguments the recipe declares.

    Undeclared arguments are dropped with a warning, the way docker reports
    unconsumed build args.
    """
    declared = recipe.declared_args()
    unused = sorted(set(supplied) - declared)
    if unused:
        logger.warning(f"Build args not consumed by the recipe: {', '.join(unused)}")
    return {k: v for k, v in supplied.items() if k in declared}


class Builder:
    """Runs build recipes stage by stage through an engine."""

    def __init__(self, engine: Engine, run_id: Optional[str] = None):
        self.engine = engine
        self.run_id = run_id

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.run_id:
            emit_event(self.run_id, event_type, data)

    def load_recipe(self, manifest: Manifest, service: ServiceSpec) -> BuildRecipe:
        """
        Read and check a service's recipe before any stage runs.

        Raises:
            BuildError: If the recipe is missing or structurally invalid
        """
        recipe_path = service.build.recipe_path(manifest.base_dir)
        if not recipe_path.exists():
            raise BuildError(f"Build recipe not found: {recipe_path}", service=service.name)

        try:
            recipe = parse_recipe(recipe_path.read_text())
            check_recipe(recipe, target=service.build.target)
        except RecipeError as e:
            raise BuildError(f"{recipe_path.name}: {e.message}", service=service.name, hint=e.hint) from e
        return recipe

    def build_service(self, manifest: Manifest, service: ServiceSpec) -> Image:
        """Build the image for a service that declares ``build``."""
        if service.build is None:
            raise BuildError(f"Service '{service.name}' has no build configuration", service=service.name)

        try:
            recipe = self.load_recipe(manifest, service)
        except BuildError as e:
            self._emit(EventTypes.BUILD_FAILED, {"service": service.name, **e.to_dict()})
            raise

        return self.build(
            recipe,
            context=service.build.context_path(manifest.base_dir),
            build_args=service.build.args,
            tag=service.image_ref(manifest.project),
            target=service.build.target,
            service=service.name,
        )

    def build(self, recipe: BuildRecipe, context: Path, build_args: Dict[str, str], tag: str,
              target: Optional[str] = None, service: Optional[str] = None) -> Image:
        """
        Build ``recipe`` and tag the final stage.

        Stages run strictly in order; any failure aborts the build and no
        image is tagged.

        Raises:
            BuildError: On any stage failure
        """
        label = service or tag
        try:
            check_recipe(recipe, target=target)
        except RecipeError as e:
            error = BuildError(e.message, service=service, hint=e.hint)
            self._emit(EventTypes.BUILD_FAILED, {"service": label, **error.to_dict()})
            raise error from e

        if not Path(context).is_dir():
            error = BuildError(f"Build context not found: {context}", service=service)
            self._emit(EventTypes.BUILD_FAILED, {"service": label, **error.to_dict()})
            raise error

        args = resolve_build_args(recipe, build_args)
        stages = recipe.stages_up_to(target)
        self._emit(EventTypes.BUILD_START, {
            "service": label,
            "tag": tag,
            "stages": [s.name for s in stages],
            "build_args": sorted(args),
        })
        logger.info(f"Building {tag} for {label} ({len(stages)} stages)")

        def on_stage(index: int, name: str, base_image: str) -> None:
            self._emit(EventTypes.BUILD_STAGE, {
                "service": label, "index": index, "stage": name, "base_image": base_image,
            })

        def on_line(line: str) -> None:
            logger.debug(f"[{label}] {line}")
            self._emit(EventTypes.BUILD_LINE, {"service": label, "line": line})

        try:
            image = self.engine.build(recipe, Path(context), args, tag, target=target,
                                      on_stage=on_stage, on_line=on_line)
        except StackupError as e:
            error = e if isinstance(e, BuildError) else BuildError(e.message, service=service, hint=e.hint)
            error.service = error.service or service
            self._emit(EventTypes.BUILD_FAILED, {"service": label, **error.to_dict()})
            logger.error(f"Build failed for {label}: {error.message}")
            if error is e:
                raise
            raise error from e

        self._emit(EventTypes.BUILD_DONE, {
            "service": label,
            "tag": image.ref,
            "digest": image.digest,
            "command": image.default_command,
        })
        return image
