"""
Dockerfile-style recipe parsing, rendering and structural checks.
"""

import json
import logging
import re
import shlex
from typing import List, Optional, Tuple

from ..errors import MissingStageError, RecipeError
from .base import BuildRecipe, CopyOp, Instruction, Stage

logger = logging.getLogger(__name__)

# Instructions kept verbatim; they do not affect stage filesystems.
PASSTHROUGH = {"LABEL", "USER", "HEALTHCHECK", "SHELL", "STOPSIGNAL", "VOLUME", "ONBUILD", "MAINTAINER"}

_FROM_RE = re.compile(r"^(?:--platform=\S+\s+)?(?P<image>\S+)(?:\s+AS\s+(?P<alias>\S+))?$", re.IGNORECASE)
_VAR_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}|(?P<plain>[A-Za-z_][A-Za-z0-9_]*))")


def _logical_lines(text: str) -> List[Tuple[int, str]]:
    """Join backslash continuations and drop comments/blank lines."""
    lines: List[Tuple[int, str]] = []
    buffer = ""
    start = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if buffer and stripped.startswith("#"):
            continue
        if not buffer:
            start = lineno
        if stripped.endswith("\\"):
            buffer += stripped[:-1].rstrip() + " "
            continue
        buffer += stripped
        lines.append((start, buffer.strip()))
        buffer = ""
    if buffer.strip():
        lines.append((start, buffer.strip()))
    return lines


def _exec_or_shell(rest: str) -> Tuple[List[str], bool]:
    """Parse exec (JSON) form, falling back to shell form."""
    if rest.startswith("["):
        try:
            value = json.loads(rest)
            if isinstance(value, list) and all(isinstance(v, str) for v in value):
                return value, True
        except json.JSONDecodeError:
            pass
    return ["/bin/sh", "-c", rest], False


def _parse_key_values(rest: str, lineno: int, keyword: str) -> List[Tuple[str, str]]:
    try:
        tokens = shlex.split(rest)
    except ValueError as e:
        raise RecipeError(f"Line {lineno}: cannot parse {keyword}: {e}") from e
    if not tokens:
        raise RecipeError(f"Line {lineno}: {keyword} needs a value")
    if "=" not in tokens[0]:
        # Legacy form: ENV KEY value with spaces
        return [(tokens[0], " ".join(tokens[1:]))]
    pairs = []
    for token in tokens:
        if "=" not in token:
            raise RecipeError(f"Line {lineno}: expected KEY=VALUE in {keyword}, got '{token}'")
        key, value = token.split("=", 1)
        pairs.append((key, value))
    return pairs


def _parse_copy(rest: str, lineno: int, keyword: str) -> CopyOp:
    from_stage = None
    while rest.startswith("--"):
        flag, _, rest = rest.partition(" ")
        if flag.startswith("--from="):
            from_stage = flag.split("=", 1)[1]
        rest = rest.strip()

    try:
        args = json.loads(rest) if rest.startswith("[") else shlex.split(rest)
    except (json.JSONDecodeError, ValueError) as e:
        raise RecipeError(f"Line {lineno}: cannot parse {keyword}: {e}") from e

    if len(args) < 2:
        raise RecipeError(f"Line {lineno}: {keyword} needs at least one source and a destination")
    if not from_stage and from_stage is not None:
        raise RecipeError(f"Line {lineno}: {keyword} --from needs a stage name")
    return CopyOp(sources=[str(a) for a in args[:-1]], dest=str(args[-1]), from_stage=from_stage)


def parse_recipe(text: str) -> BuildRecipe:
    """
    Parse Dockerfile text into a BuildRecipe.

    Raises:
        RecipeError: On unknown instructions or malformed lines
    """
    recipe = BuildRecipe()
    current: Optional[Stage] = None

    for lineno, line in _logical_lines(text):
        parts = line.split(None, 1)
        keyword = parts[0].upper()
        rest = parts[1].strip() if len(parts) > 1 else ""

        if keyword == "FROM":
            match = _FROM_RE.match(rest)
            if not match:
                raise RecipeError(f"Line {lineno}: cannot parse FROM '{rest}'")
            current = Stage(
                base_image=match.group("image"),
                alias=match.group("alias"),
                index=len(recipe.stages),
            )
            recipe.stages.append(current)
            continue

        if keyword == "ARG" and current is None:
            name, _, default = rest.partition("=")
            recipe.global_args[name.strip()] = default if "=" in rest else None
            continue

        if current is None:
            raise RecipeError(f"Line {lineno}: {keyword} before the first FROM")

        if keyword == "ARG":
            name, _, default = rest.partition("=")
            current.steps.append(Instruction("ARG", (name.strip(), default if "=" in rest else None)))
        elif keyword == "ENV":
            for pair in _parse_key_values(rest, lineno, keyword):
                current.steps.append(Instruction("ENV", pair))
        elif keyword == "WORKDIR":
            if not rest:
                raise RecipeError(f"Line {lineno}: WORKDIR needs a path")
            current.steps.append(Instruction("WORKDIR", rest))
        elif keyword in ("COPY", "ADD"):
            current.steps.append(Instruction("COPY", _parse_copy(rest, lineno, keyword)))
        elif keyword == "RUN":
            argv, is_exec = _exec_or_shell(rest)
            current.steps.append(Instruction("RUN", " ".join(argv) if is_exec else rest))
        elif keyword in ("CMD", "ENTRYPOINT"):
            argv, _ = _exec_or_shell(rest)
            current.steps.append(Instruction(keyword, argv))
        elif keyword == "EXPOSE":
            current.steps.append(Instruction("EXPOSE", rest.split()))
        elif keyword in PASSTHROUGH:
            current.steps.append(Instruction(keyword, rest))
        else:
            raise RecipeError(f"Line {lineno}: unknown instruction '{keyword}'")

    return recipe


def check_recipe(recipe: BuildRecipe, target: Optional[str] = None) -> None:
    """
    Structural checks that must pass before any stage runs.

    Raises:
        RecipeError: If the recipe has no stages or the target is unknown
        MissingStageError: If a COPY --from does not name an earlier stage
    """
    if not recipe.stages:
        raise RecipeError("Recipe has no FROM instruction")

    if target is not None and recipe.find_stage(target) is None:
        raise RecipeError(f"Build target stage '{target}' not found",
                          hint=f"Known stages: {', '.join(recipe.stage_names())}")

    aliases = set()
    for stage in recipe.stages:
        if stage.alias:
            if stage.alias in aliases:
                raise RecipeError(f"Duplicate stage alias '{stage.alias}'")
            aliases.add(stage.alias)
        for copy in stage.copies:
            if copy.from_stage is None:
                continue
            if recipe.find_stage(copy.from_stage, before=stage.index) is None:
                raise MissingStageError(copy.from_stage, stage.index)


def expand_vars(value: str, variables: dict) -> str:
    """Expand $VAR, ${VAR} and ${VAR:-default}; unknown names expand to empty."""
    def replace(match):
        name = match.group("braced") or match.group("plain")
        current = variables.get(name)
        if current in (None, "") and match.group("default") is not None:
            return match.group("default")
        return current or ""
    return _VAR_RE.sub(replace, value)


def _format_argv(argv: List[str]) -> str:
    if len(argv) == 3 and argv[:2] == ["/bin/sh", "-c"]:
        return argv[2]
    return json.dumps(argv)


def render_recipe(recipe: BuildRecipe) -> str:
    """Render a BuildRecipe back to Dockerfile text."""
    lines: List[str] = []
    for name, default in recipe.global_args.items():
        lines.append(f"ARG {name}={default}" if default is not None else f"ARG {name}")

    for stage in recipe.stages:
        if lines:
            lines.append("")
        header = f"FROM {stage.base_image}"
        if stage.alias:
            header += f" AS {stage.alias}"
        lines.append(header)

        for step in stage.steps:
            if step.kind == "ARG":
                name, default = step.value
                lines.append(f"ARG {name}={default}" if default is not None else f"ARG {name}")
            elif step.kind == "ENV":
                key, value = step.value
                if any(ch.isspace() for ch in value):
                    value = '"' + value.replace('"', '\\"') + '"'
                lines.append(f"ENV {key}={value}")
            elif step.kind == "COPY":
                copy = step.value
                flag = f"--from={copy.from_stage} " if copy.from_stage is not None else ""
                lines.append(f"COPY {flag}{' '.join(copy.sources)} {copy.dest}")
            elif step.kind in ("CMD", "ENTRYPOINT"):
                lines.append(f"{step.kind} {_format_argv(step.value)}")
            elif step.kind == "EXPOSE":
                lines.append(f"EXPOSE {' '.join(step.value)}")
            else:
                lines.append(f"{step.kind} {step.value}")

    return "\n".join(lines) + "\n"
