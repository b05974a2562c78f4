"""Pre-upgrade checks on the source datastore, the temporary datastore and their hosts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from vmfsupgrade.utils.logging import get_logger

logger = get_logger(__name__)


def parse_version(version: str) -> tuple[int, ...]:
    """``"6.7.0"`` -> ``(6, 7, 0)``; non-numeric parts are ignored."""
    parts = []
    for piece in str(version).split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        if not digits:
            break
        parts.append(int(digits))
    return tuple(parts)


def version_at_least(version: str, minimum: str) -> bool:
    return parse_version(version) >= parse_version(minimum)


@dataclass
class ValidationCheck:
    """Result of a single validation check."""
    name: str
    passed: bool
    message: str
    blocking: bool = True  # If False, it's a warning not an error


@dataclass
class ValidationReport:
    """Outcome of one precondition stage."""
    subject: str
    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks if c.blocking)

    @property
    def failures(self) -> list[ValidationCheck]:
        return [c for c in self.checks if c.blocking and not c.passed]

    @property
    def warnings(self) -> list[ValidationCheck]:
        return [c for c in self.checks if not c.blocking and not c.passed]

    def summary(self) -> str:
        return "; ".join(f"{c.name}: {c.message}" for c in self.failures)


class UpgradeValidator:
    """Checks that must hold before anything is modified.

    Each public method backs one precondition stage and reads everything it
    needs through the inventory, so a failed check can simply be re-run
    once the operator fixes the environment.
    """

    def __init__(
        self,
        inventory,
        source_version: int = 5,
        min_host_version: str = "6.5.0",
        confirm: Optional[Callable[[str], bool]] = None,
    ):
        self.inventory = inventory
        self._source_version = source_version
        self.min_host_version = min_host_version
        self.confirm = confirm

    def temp_is_empty(self, temp) -> ValidationReport:
        report = ValidationReport(subject=temp.name)
        registered = [vm.name for vm in self.inventory.vms_on(temp) + self.inventory.templates_on(temp)]
        report.checks.append(ValidationCheck(
            "Registered VMs",
            not registered,
            "none" if not registered else f"{len(registered)} VM(s)/template(s) on {temp.name}: "
                                          f"{', '.join(registered[:5])}",
        ))
        items = self.inventory.root_items(temp)
        report.checks.append(ValidationCheck(
            "Datastore contents",
            not items,
            "empty" if not items else f"{temp.name} holds {len(items)} item(s): {', '.join(items[:5])}",
        ))
        return report

    def hosts_match(self, source, temp, vcenter_version: str) -> ValidationReport:
        report = ValidationReport(subject=f"{source.name}/{temp.name}")

        report.checks.append(ValidationCheck(
            "vCenter version",
            version_at_least(vcenter_version, self.min_host_version),
            f"vCenter {vcenter_version} (need ≥ {self.min_host_version})",
        ))

        source_hosts = {h.name: h for h in self.inventory.mounted_hosts(source)}
        temp_hosts = {h.name: h for h in self.inventory.mounted_hosts(temp)}

        old = []
        for name, host in sorted({**source_hosts, **temp_hosts}.items()):
            version = self.inventory.host_version(host)
            if not version_at_least(version, self.min_host_version):
                old.append(f"{name} ({version})")
        report.checks.append(ValidationCheck(
            "ESXi version",
            not old,
            f"all hosts ≥ {self.min_host_version}" if not old else f"hosts below {self.min_host_version}: {', '.join(old)}",
        ))

        only_source = sorted(set(source_hosts) - set(temp_hosts))
        only_temp = sorted(set(temp_hosts) - set(source_hosts))
        if not only_source and not only_temp:
            message = f"{len(source_hosts)} host(s) mount both datastores"
        else:
            message = (f"only {source.name}: {', '.join(only_source) or '-'}; "
                       f"only {temp.name}: {', '.join(only_temp) or '-'}")
        report.checks.append(ValidationCheck(
            "Host parity", not only_source and not only_temp and bool(source_hosts), message,
        ))
        return report

    def _version_check(self, ds, label: str) -> ValidationCheck:
        version = self.inventory.vmfs_major_version(ds)
        if version is None:
            return ValidationCheck(label, False, f"{ds.name} is not a VMFS datastore")
        return ValidationCheck(
            label,
            version == self._source_version,
            f"{ds.name} is VMFS{version} (need VMFS{self._source_version})",
        )

    def temp_version(self, temp) -> ValidationReport:
        report = ValidationReport(subject=temp.name)
        report.checks.append(self._version_check(temp, "Temporary datastore version"))
        return report

    def temp_capacity(self, source, temp) -> ValidationReport:
        report = ValidationReport(subject=temp.name)
        src_cap = self.inventory.capacity_bytes(source)
        tmp_cap = self.inventory.capacity_bytes(temp)
        gib = 1024 ** 3
        report.checks.append(ValidationCheck(
            "Temporary datastore capacity",
            tmp_cap >= src_cap,
            f"{temp.name} {tmp_cap / gib:.0f} GiB vs {source.name} {src_cap / gib:.0f} GiB",
        ))
        return report

    def source_version(self, source) -> ValidationReport:
        report = ValidationReport(subject=source.name)
        report.checks.append(self._version_check(source, "Source datastore version"))
        return report

    def source_configuration(self, source, force: bool = False) -> ValidationReport:
        """Nothing on the source blocks evacuation: FCDs, FT, VADP locks, shared buses, replication."""
        report = ValidationReport(subject=source.name)

        fcds = self.inventory.fcds_on(source)
        report.checks.append(ValidationCheck(
            "First Class Disks", not fcds,
            "none" if not fcds else f"{len(fcds)} FCD(s) on {source.name}",
        ))

        flags = [self.inventory.vm_flags(vm) for vm in self.inventory.vms_on(source)]
        for label, attr in (
            ("Fault Tolerance", "fault_tolerant"),
            ("VADP backup lock", "vadp_locked"),
            ("Cluster sharing", "shared_bus"),
        ):
            hits = [f.name for f in flags if getattr(f, attr)]
            report.checks.append(ValidationCheck(
                label, not hits, "none" if not hits else f"configured on: {', '.join(hits)}",
            ))

        replicated = [f.name for f in flags if f.replicated]
        if replicated:
            question = (f"VM(s) {', '.join(replicated)} are protected by vSphere Replication/DR. "
                        f"Relocating them can break replication. Continue?")
            accepted = force or (self.confirm is not None and self.confirm(question))
            report.checks.append(ValidationCheck(
                "Replication",
                accepted,
                "accepted by operator" if accepted else "declined; re-run with --force to skip the prompt",
            ))
        return report
