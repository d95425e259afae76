"""
Build recipe data model: an ordered list of image-construction stages.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set


@dataclass
class CopyOp:
    """One COPY/ADD: from the host context, or from a named prior stage."""
    sources: List[str]
    dest: str
    from_stage: Optional[str] = None    # alias or stage index; None means host context


@dataclass
class Instruction:
    """A stage step, kept in declaration order."""
    kind: str               # "ARG" | "ENV" | "WORKDIR" | "COPY" | "RUN" | "EXPOSE" | "CMD" | "ENTRYPOINT"
    value: object


@dataclass
class Stage:
    base_image: str
    alias: Optional[str] = None
    index: int = 0
    steps: List[Instruction] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.alias or str(self.index)

    @property
    def args(self) -> Dict[str, Optional[str]]:
        """Build arguments declared in this stage with their defaults."""
        return {name: default for kind, (name, default) in self._steps("ARG")}

    @property
    def env(self) -> Dict[str, str]:
        return {key: value for kind, (key, value) in self._steps("ENV")}

    @property
    def workdir(self) -> Optional[str]:
        dirs = [value for kind, value in self._steps("WORKDIR")]
        return dirs[-1] if dirs else None

    @property
    def copies(self) -> List[CopyOp]:
        return [value for kind, value in self._steps("COPY")]

    @property
    def commands(self) -> List[str]:
        return [value for kind, value in self._steps("RUN")]

    @property
    def cmd(self) -> Optional[List[str]]:
        cmds = [value for kind, value in self._steps("CMD")]
        return cmds[-1] if cmds else None

    @property
    def entrypoint(self) -> Optional[List[str]]:
        eps = [value for kind, value in self._steps("ENTRYPOINT")]
        return eps[-1] if eps else None

    @property
    def exposed_ports(self) -> List[str]:
        ports: List[str] = []
        for kind, value in self._steps("EXPOSE"):
            ports.extend(value)
        return ports

    def _steps(self, kind: str):
        return [(step.kind, step.value) for step in self.steps if step.kind == kind]


@dataclass
class BuildRecipe:
    stages: List[Stage] = field(default_factory=list)
    global_args: Dict[str, Optional[str]] = field(default_factory=dict)   # ARGs before the first FROM

    @property
    def final_stage(self) -> Stage:
        return self.stages[-1]

    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def find_stage(self, ref: str, before: Optional[int] = None) -> Optional[Stage]:
        """
        Resolve a stage reference (alias or numeric index).

        Args:
            ref: Alias or index as written in COPY --from
            before: Only consider stages with index lower than this
        """
        limit = len(self.stages) if before is None else before
        for stage in self.stages[:limit]:
            if stage.alias and stage.alias == ref:
                return stage
            if ref.isdigit() and stage.index == int(ref):
                return stage
        return None

    def stages_up_to(self, target: Optional[str]) -> List[Stage]:
        """Stages needed to build ``target`` (all stages when target is None)."""
        if target is None:
            return list(self.stages)
        stage = self.find_stage(target)
        if stage is None:
            return []
        return self.stages[:stage.index + 1]

    def declared_args(self) -> Set[str]:
        names = set(self.global_args)
        for stage in self.stages:
            names.update(stage.args)
        return names
