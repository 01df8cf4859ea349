"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import List, Dict, Sequence
from ..MODELS.service_spec import ServiceSpec


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def validate(self, services: Sequence[ServiceSpec]) -> None:
        """
        Checks that every dependency exists, the graph is acyclic, and a
        dependency is always selected whenever its dependent is.

        :param services: Services in declaration order.
        :raises ValueError: On the first violation found.
        """
        by_name = {svc.name: svc for svc in services}
        for svc in services:
            for dep in svc.depends_on:
                if dep == svc.name:
                    raise ValueError(f"service '{svc.name}' depends on itself")
                if dep not in by_name:
                    raise ValueError(f"service '{svc.name}' depends on unknown service '{dep}'")
                target = by_name[dep]
                if target.profiles and not (svc.profiles and svc.profiles <= target.profiles):
                    raise ValueError(
                        f"service '{svc.name}' depends on '{dep}', which is not "
                        f"active in every profile '{svc.name}' runs in"
                    )
        self.resolve_order(services)

    def resolve_order(self, services: Sequence[ServiceSpec]) -> List[str]:
        """
        Determines the correct order to start services using topological sort.
        Ties keep declaration order.

        :param services: The services to order.
        :return: Service names in the order they should be started.
        :raises ValueError: If a circular dependency is detected.
        """
        dependencies = {svc.name: list(svc.depends_on) for svc in services}

        ordered = []
        visited = set()
        processing = []

        def visit(name):
            """
            Recursive function for topological sort.
            """
            if name in processing:
                cycle = processing[processing.index(name):] + [name]
                raise ValueError(f"Circular dependency detected: {' -> '.join(cycle)}")
            if name not in visited:
                processing.append(name)
                for dep in dependencies.get(name, []):
                    if dep in dependencies:  # Only depend on services in the selection
                        visit(dep)
                processing.pop()
                visited.add(name)
                ordered.append(name)

        for name in dependencies:
            visit(name)

        return ordered

    def waves(self, services: Sequence[ServiceSpec]) -> List[List[ServiceSpec]]:
        """
        Groups services into start waves. Every service in a wave depends only
        on services from earlier waves, so a whole wave can start in parallel.

        :param services: The selected services, in declaration order.
        :return: Waves of services, each in declaration order.
        """
        order = self.resolve_order(services)
        by_name = {svc.name: svc for svc in services}
        depth: Dict[str, int] = {}
        for name in order:
            deps = [d for d in by_name[name].depends_on if d in by_name]
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)

        result: List[List[ServiceSpec]] = []
        for svc in services:
            level = depth[svc.name]
            while len(result) <= level:
                result.append([])
            result[level].append(svc)
        return result
