"""
Tracked application table.

Static mapping between stable app ids and OS package identifiers.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .errors import UnknownAppError


@dataclass(frozen=True)
class TrackedApp:
    """One monitored application."""
    id: str
    name: str
    package_name: str
    icon_name: str


DEFAULT_TRACKED_APPS = (
    TrackedApp("youtube", "YouTube", "com.google.android.youtube", "youtube"),
    TrackedApp("facebook", "Facebook", "com.facebook.katana", "facebook"),
    TrackedApp("twitter", "Twitter", "com.twitter.android", "twitter"),
    TrackedApp("instagram", "Instagram", "com.instagram.android", "instagram"),
)


class TrackedAppTable:
    """Ordered lookup of tracked apps by id and by package.

    The first app is the reference app for combined-limit defaults.
    """

    def __init__(self, apps: Iterable[TrackedApp]):
        self._apps: List[TrackedApp] = list(apps)
        self._by_id: Dict[str, TrackedApp] = {}
        self._by_package: Dict[str, TrackedApp] = {}
        for app in self._apps:
            if app.id in self._by_id:
                raise ValueError(f"Duplicate tracked app id: {app.id}")
            if app.package_name in self._by_package:
                raise ValueError(f"Duplicate package name: {app.package_name}")
            self._by_id[app.id] = app
            self._by_package[app.package_name] = app

    def __iter__(self) -> Iterator[TrackedApp]:
        return iter(self._apps)

    def __len__(self) -> int:
        return len(self._apps)

    def __contains__(self, app_id: str) -> bool:
        return app_id in self._by_id

    @property
    def ids(self) -> List[str]:
        return [app.id for app in self._apps]

    @property
    def reference_app_id(self) -> Optional[str]:
        return self._apps[0].id if self._apps else None

    def get(self, app_id: str) -> TrackedApp:
        """Look up an app by id.

        Raises:
            UnknownAppError: If the id is not tracked
        """
        try:
            return self._by_id[app_id]
        except KeyError:
            raise UnknownAppError(f"Unknown app id: {app_id}")

    def display_name(self, app_id: str) -> str:
        app = self._by_id.get(app_id)
        return app.name if app else app_id

    def package_for(self, app_id: str) -> str:
        return self.get(app_id).package_name

    def packages_for(self, app_ids: Iterable[str]) -> Set[str]:
        return {self.package_for(app_id) for app_id in app_ids}

    def app_for_package(self, package_name: str) -> Optional[TrackedApp]:
        return self._by_package.get(package_name)

    def ids_for_packages(self, packages: Iterable[str]) -> Set[str]:
        """Map package names back to app ids, dropping untracked packages."""
        ids = set()
        for package in packages:
            app = self._by_package.get(package)
            if app is not None:
                ids.add(app.id)
        return ids
