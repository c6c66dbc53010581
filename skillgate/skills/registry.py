from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

from skillgate.skills.models import SkillDefinition
from skillgate.skills.parser import parse_skill_definition, parse_skill_file


class SkillRegistry:
    def __init__(self, root: Path | None, definitions: dict[str, SkillDefinition]):
        self.root = root
        self._definitions = definitions

    @classmethod
    def load(cls, root: Path) -> "SkillRegistry":
        skill_root = root.expanduser().resolve()
        definitions: dict[str, SkillDefinition] = {}
        if not skill_root.exists():
            return cls(root=skill_root, definitions={})

        for skill_file in sorted(skill_root.glob("*.json"), key=lambda p: p.name):
            definition = parse_skill_file(skill_file)
            if definition.id in definitions:
                raise ValueError(f"duplicate skill id detected: {definition.id}")
            definitions[definition.id] = definition

        return cls(root=skill_root, definitions=definitions)

    @classmethod
    def from_dicts(cls, raw_definitions: Iterable[dict[str, Any]]) -> "SkillRegistry":
        definitions: dict[str, SkillDefinition] = {}
        for raw in raw_definitions:
            definition = parse_skill_definition(raw)
            if definition.id in definitions:
                raise ValueError(f"duplicate skill id detected: {definition.id}")
            definitions[definition.id] = definition
        return cls(root=None, definitions=definitions)

    def get(self, skill_id: str) -> SkillDefinition | None:
        return self._definitions.get(skill_id)

    def all(self) -> list[SkillDefinition]:
        return [self._definitions[key] for key in sorted(self._definitions.keys())]

    def ids(self) -> list[str]:
        return sorted(self._definitions.keys())
