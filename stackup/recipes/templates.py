"""
Two-stage recipe templates for compiled services.

Each template compiles in a toolchain image and copies only the produced
binary into a slim runtime image.
"""

import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(errors="ignore")
    except OSError:
        return ""


class RecipeTemplate(ABC):
    """Abstract base class for recipe templates."""

    name: str = ""

    @abstractmethod
    def applies(self, context_dir: str) -> int:
        """
        Return score (0..100) for how well this template fits a build context.
        """

    @abstractmethod
    def binary_name(self, context_dir: str) -> str:
        """Name of the artifact the compile stage produces."""

    @abstractmethod
    def render(self, context_dir: str, build_args: Optional[List[str]] = None,
               binary: Optional[str] = None, port: Optional[int] = None) -> str:
        """Return Dockerfile text for the context."""


def _arg_lines(build_args: List[str]) -> List[str]:
    lines = []
    for arg in build_args:
        lines.append(f"ARG {arg}")
        lines.append(f"ENV {arg}=${arg}")
    return lines


class RustTemplate(RecipeTemplate):
    """cargo release build on the Rust toolchain, Debian slim runtime."""

    name = "rust"
    builder_image = "rust:1.69-buster"
    runtime_image = "debian:buster-slim"

    def applies(self, context_dir: str) -> int:
        root = Path(context_dir)
        score = 0
        if (root / "Cargo.toml").exists():
            score += 70
        if (root / "Cargo.lock").exists():
            score += 10
        if (root / "src" / "main.rs").exists():
            score += 20
        return min(score, 100)

    def binary_name(self, context_dir: str) -> str:
        cargo = _read_text(Path(context_dir) / "Cargo.toml")
        match = re.search(r'\[package\][^\[]*?\bname\s*=\s*"([^"]+)"', cargo, re.S)
        if match:
            return match.group(1)
        return Path(context_dir).resolve().name or "app"

    def render(self, context_dir: str, build_args: Optional[List[str]] = None,
               binary: Optional[str] = None, port: Optional[int] = None) -> str:
        build_args = build_args or []
        binary = binary or self.binary_name(context_dir)
        lines = [
            f"FROM {self.builder_image} AS builder",
            "WORKDIR /app",
            *_arg_lines(build_args),
            "COPY . .",
            "RUN cargo build --release",
            "",
            f"FROM {self.runtime_image}",
            "WORKDIR /usr/local/bin",
            *_arg_lines(build_args),
            f"COPY --from=builder /app/target/release/{binary} .",
        ]
        if port:
            lines.append(f"EXPOSE {port}")
        lines.append(f'CMD ["./{binary}"]')
        return "\n".join(lines) + "\n"


class GoTemplate(RecipeTemplate):
    """go build on the Go toolchain, Debian slim runtime."""

    name = "go"
    builder_image = "golang:1.21-bookworm"
    runtime_image = "debian:bookworm-slim"

    def applies(self, context_dir: str) -> int:
        root = Path(context_dir)
        score = 0
        if (root / "go.mod").exists():
            score += 70
        if (root / "main.go").exists():
            score += 30
        return min(score, 100)

    def binary_name(self, context_dir: str) -> str:
        gomod = _read_text(Path(context_dir) / "go.mod")
        match = re.search(r"^module\s+(\S+)", gomod, re.M)
        if match:
            return match.group(1).rstrip("/").split("/")[-1]
        return Path(context_dir).resolve().name or "app"

    def render(self, context_dir: str, build_args: Optional[List[str]] = None,
               binary: Optional[str] = None, port: Optional[int] = None) -> str:
        build_args = build_args or []
        binary = binary or self.binary_name(context_dir)
        lines = [
            f"FROM {self.builder_image} AS builder",
            "WORKDIR /src",
            *_arg_lines(build_args),
            "COPY . .",
            f"RUN go build -o /out/{binary} .",
            "",
            f"FROM {self.runtime_image}",
            "WORKDIR /usr/local/bin",
            *_arg_lines(build_args),
            f"COPY --from=builder /out/{binary} .",
        ]
        if port:
            lines.append(f"EXPOSE {port}")
        lines.append(f'CMD ["./{binary}"]')
        return "\n".join(lines) + "\n"


AVAILABLE_TEMPLATES: List[RecipeTemplate] = [
    RustTemplate(),
    GoTemplate(),
]


def select_template(context_dir: str) -> Optional[RecipeTemplate]:
    """
    Select the best template for a build context.

    Returns:
        Best matching RecipeTemplate, or None if nothing applies
    """
    scores = []
    for template in AVAILABLE_TEMPLATES:
        score = template.applies(context_dir)
        scores.append((template, score))
        logger.debug(f"Template {template.name}: score {score}")

    scores.sort(key=lambda x: x[1], reverse=True)

    if scores and scores[0][1] > 0:
        best, best_score = scores[0]
        logger.info(f"Selected template: {best.name} (score: {best_score})")
        return best

    logger.warning(f"No recipe template applies to {context_dir}")
    return None


def get_template(name: str) -> Optional[RecipeTemplate]:
    for template in AVAILABLE_TEMPLATES:
        if template.name == name.lower():
            return template
    return None


def list_templates() -> Dict[str, str]:
    return {t.name: (t.__doc__ or "").strip() for t in AVAILABLE_TEMPLATES}
