"""Validated dependency graph for workflow templates.

A graph is built once when a template is registered and stored with it, so
runs never re-resolve dependency keys by name.
"""

from dataclasses import dataclass, field


class WorkflowGraphError(ValueError):
    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


def _step_fields(step) -> tuple[str, list[str]]:
    if isinstance(step, dict):
        return step["key"], list(step.get("depends_on") or [])
    return step.key, list(step.depends_on or [])


@dataclass(frozen=True)
class WorkflowGraph:
    order: tuple[str, ...]
    dependencies: dict[str, tuple[str, ...]] = field(default_factory=dict)
    dependents: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def build(cls, steps) -> "WorkflowGraph":
        """Validate ``steps`` and return them in topological order.

        Raises :class:`WorkflowGraphError` listing every problem found:
        duplicate keys, self or dangling dependencies, and cycles.
        """
        problems: list[str] = []
        keys: list[str] = []
        dependencies: dict[str, tuple[str, ...]] = {}

        for step in steps:
            key, depends_on = _step_fields(step)
            if key in dependencies:
                problems.append(f"duplicate step key: {key}")
                continue
            keys.append(key)
            dependencies[key] = tuple(dict.fromkeys(depends_on))

        if not keys:
            problems.append("workflow has no steps")

        for key in keys:
            for dep in dependencies[key]:
                if dep == key:
                    problems.append(f"step {key} depends on itself")
                elif dep not in dependencies:
                    problems.append(f"step {key} depends on unknown step {dep}")
        if problems:
            raise WorkflowGraphError(problems)

        dependents: dict[str, list[str]] = {key: [] for key in keys}
        for key in keys:
            for dep in dependencies[key]:
                dependents[dep].append(key)

        # Kahn's algorithm, taking steps in declaration order for stable output.
        remaining = {key: len(dependencies[key]) for key in keys}
        order: list[str] = []
        ready = [key for key in keys if remaining[key] == 0]
        while ready:
            key = ready.pop(0)
            order.append(key)
            for child in dependents[key]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)

        if len(order) != len(keys):
            cyclic = [key for key in keys if key not in order]
            raise WorkflowGraphError(
                [f"dependency cycle among steps: {', '.join(cyclic)}"]
            )

        return cls(
            order=tuple(order),
            dependencies=dependencies,
            dependents={key: tuple(value) for key, value in dependents.items()},
        )

    def roots(self) -> tuple[str, ...]:
        return tuple(key for key in self.order if not self.dependencies[key])

    def is_satisfied(self, key: str, finished: set[str]) -> bool:
        return all(dep in finished for dep in self.dependencies[key])

    def to_json(self) -> dict:
        return {
            "order": list(self.order),
            "dependencies": {k: list(v) for k, v in self.dependencies.items()},
            "dependents": {k: list(v) for k, v in self.dependents.items()},
        }

    @classmethod
    def from_json(cls, data: dict) -> "WorkflowGraph":
        return cls(
            order=tuple(data["order"]),
            dependencies={k: tuple(v) for k, v in data["dependencies"].items()},
            dependents={k: tuple(v) for k, v in data["dependents"].items()},
        )
