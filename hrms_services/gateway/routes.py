"""
Gateway route table.

Path prefixes are fixed; only the service base URLs come from the
environment. The table is built once at startup and never mutated.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from hrms_services.config import SERVICE_URLS

API_PREFIX = "/api/v1"

# (path prefix, service, replacement for the prefix)
DEFAULT_BINDINGS: Tuple[Tuple[str, str, str], ...] = (
    (f"{API_PREFIX}/auth", "auth", ""),
    (f"{API_PREFIX}/employee", "employee", ""),
    (f"{API_PREFIX}/department", "employee", "/departments"),
    (f"{API_PREFIX}/position", "employee", "/positions"),
    (f"{API_PREFIX}/performance", "employee", "/performance"),
    (f"{API_PREFIX}/leave", "leave", ""),
    (f"{API_PREFIX}/attendance", "leave", "/attendance"),
    (f"{API_PREFIX}/payroll", "payroll", ""),
    (f"{API_PREFIX}/payslip", "payroll", "/payslips"),
    (f"{API_PREFIX}/notification", "notification", ""),
    (f"{API_PREFIX}/announcement", "notification", "/announcements"),
    (f"{API_PREFIX}/company", "notification", "/company"),
)


@dataclass(frozen=True)
class RouteBinding:
    path_prefix: str
    service: str
    target_url: str
    replacement: str = ""

    def matches(self, path: str) -> bool:
        """Prefix match on a path segment boundary."""
        if not path.startswith(self.path_prefix):
            return False
        rest = path[len(self.path_prefix):]
        return rest == "" or rest.startswith("/")

    def rewrite(self, path: str) -> str:
        """Replace the gateway prefix with the service-side path."""
        rewritten = self.replacement + path[len(self.path_prefix):]
        return rewritten or "/"

    def target_for(self, path: str) -> str:
        return self.target_url.rstrip("/") + self.rewrite(path)


class RouteTable:
    """Longest-prefix lookup over a static set of bindings."""

    def __init__(self, bindings: Iterable[RouteBinding]):
        self._bindings: Tuple[RouteBinding, ...] = tuple(
            sorted(bindings, key=lambda b: len(b.path_prefix), reverse=True)
        )

    @classmethod
    def from_service_urls(cls, service_urls: Optional[Dict[str, str]] = None) -> "RouteTable":
        """
        Build the table from a map of logical service name to base URL.

        Raises:
            ValueError: If a prefix refers to a service with no configured URL
        """
        service_urls = SERVICE_URLS if service_urls is None else service_urls
        bindings = []
        for prefix, service, replacement in DEFAULT_BINDINGS:
            if service not in service_urls:
                raise ValueError(f"No URL configured for service '{service}'")
            bindings.append(RouteBinding(prefix, service, service_urls[service], replacement))
        return cls(bindings)

    @property
    def bindings(self) -> Tuple[RouteBinding, ...]:
        return self._bindings

    def services(self) -> Dict[str, str]:
        """Distinct services and their base URLs."""
        services: Dict[str, str] = {}
        for binding in sorted(self._bindings, key=lambda b: b.service):
            services.setdefault(binding.service, binding.target_url)
        return services

    def match(self, path: str) -> Optional[RouteBinding]:
        for binding in self._bindings:
            if binding.matches(path):
                return binding
        return None

    def describe(self) -> List[Dict[str, str]]:
        return [
            {"prefix": b.path_prefix, "service": b.service, "target": b.target_url}
            for b in self._bindings
        ]
