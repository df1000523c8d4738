"""Router — verb + path lookup for the request pipeline.

Invariants:
    - find() returns a RouteMatch, or a RouteMiss with status 404 (no route
      at that path) or 405 (path known, verb not); HEAD is served by GET routes
    - RouteMiss.allowed is computed on first access and only for 405 misses;
      it lists the verbs registered at that path, in registration order
    - Path parameters use Starlette syntax (`/posts/{id:int}`)
    - When several routes match, the most specific wins: segments compare
      left to right, static before parameter before `{name:path}`; ties go to
      the route registered first
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

from starlette.routing import compile_path

from keel.core.domain_types import HttpVerb


def _segment_rank(segment: str) -> int:
    if "{" not in segment:
        return 0
    return 2 if ":path}" in segment else 1


@dataclass(eq=False)
class Route:
    verb: str
    path: str
    handler: Callable
    controller: Any = None
    action: str | None = None
    meta: Any = None
    model: str | None = None
    transacted: bool = False
    parameter_validators: dict[str, Any] = field(default_factory=dict)
    required_parameters: tuple[str, ...] = ()
    returns_validator: Any = None

    def __post_init__(self) -> None:
        self.verb = HttpVerb(self.verb.lower()).value
        self.path_regex, self.path_format, self.param_convertors = compile_path(self.path)
        segments = self.path.strip("/").split("/")
        self.specificity = tuple(_segment_rank(segment) for segment in segments)

    def __repr__(self) -> str:
        return f"<Route {self.verb.upper()} {self.path}>"

    def match(self, path: str) -> dict[str, Any] | None:
        match = self.path_regex.match(path)
        if match is None:
            return None
        return {
            key: self.param_convertors[key].convert(value)
            for key, value in match.groupdict().items()
        }


@dataclass(frozen=True)
class RouteMatch:
    route: Route
    params: dict[str, Any]
    status: int = 200


@dataclass(eq=False)
class RouteMiss:
    router: "Router"
    method: str
    path: str
    status: int

    @cached_property
    def allowed(self) -> list[str] | None:
        if self.status != 405:
            return None
        return self.router.allowed_methods(self.path)


class Router:
    def __init__(self) -> None:
        self.routes: list[Route] = []

    def add_route(self, route: Route) -> Route:
        self.routes.append(route)
        return route

    def add(self, verb: str, path: str, handler: Callable, **kwargs: Any) -> Route:
        return self.add_route(Route(verb, path, handler, **kwargs))

    def find(self, method: str, path: str) -> RouteMatch | RouteMiss:
        method = method.lower()
        path_known = False
        candidates = []
        for route in self.routes:
            params = route.match(path)
            if params is None:
                continue
            if route.verb == method or (method == "head" and route.verb == "get"):
                candidates.append(RouteMatch(route, params))
            path_known = True
        if candidates:
            return min(candidates, key=lambda match: match.route.specificity)
        return RouteMiss(self, method, path, 405 if path_known else 404)

    def allowed_methods(self, path: str) -> list[str]:
        allowed: list[str] = []
        for route in self.routes:
            verb = route.verb.upper()
            if verb not in allowed and route.match(path) is not None:
                allowed.append(verb)
        return allowed
