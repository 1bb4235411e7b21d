from dataclasses import dataclass

from gcp_iam.models import Role


@dataclass
class RoleComparison:
    first: Role
    second: Role
    first_permissions: list[str]
    second_permissions: list[str]

    @property
    def common(self) -> list[str]:
        return sorted(set(self.first_permissions) & set(self.second_permissions))

    @property
    def only_first(self) -> list[str]:
        return sorted(set(self.first_permissions) - set(self.second_permissions))

    @property
    def only_second(self) -> list[str]:
        return sorted(set(self.second_permissions) - set(self.first_permissions))

    def lines(self) -> list[str]:
        a, b = self.first.name, self.second.name
        common, only_a, only_b = self.common, self.only_first, self.only_second
        lines = [
            "Comparing roles:",
            f"  Role 1: {a} ({self.first.title})",
            f"  Role 2: {b} ({self.second.title})",
            "",
            f"Common permissions ({len(common)}):",
            *(f"  ✓ {p}" for p in common),
            "",
            f"Permissions only in '{a}' ({len(only_a)}):",
            *(f"  - {p}" for p in only_a),
            "",
            f"Permissions only in '{b}' ({len(only_b)}):",
            *(f"  + {p}" for p in only_b),
            "",
            "Summary:",
            f"  Total permissions in '{a}': {len(self.first_permissions)}",
            f"  Total permissions in '{b}': {len(self.second_permissions)}",
            f"  Common permissions: {len(common)}",
            f"  Unique to '{a}': {len(only_a)}",
            f"  Unique to '{b}': {len(only_b)}",
        ]
        return lines
