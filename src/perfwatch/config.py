"""Configuration system for perfwatch."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

VALID_COMPARATORS = (">", ">=", "<", "<=")
VALID_SEVERITIES = ("warning", "critical")
VALID_GAP_POLICIES = ("skip", "gap")


@dataclass
class SystemConfig:
    """Sampling and acquisition configuration."""

    sample_interval: float = 1.0  # Seconds between ticks
    read_timeout: float = 0.5  # Max seconds a single domain read may take
    read_max_bytes: int = 1024 * 1024  # Max bytes read from any one pseudo-file
    duration: float = 0.0  # Stop after this many seconds (0 = run until stopped)
    proc_root: str = "/proc"
    sys_root: str = "/sys"
    # History buffers for live trend display
    history_size: int = 120  # Samples kept per series
    history_gap_policy: str = "skip"  # "skip" drops unavailable ticks, "gap" records None
    history_series: list[str] = field(
        default_factory=lambda: [
            "cpu.busy_pct",
            "cpu.iowait_pct",
            "mem.used_pct",
            "cgroup.memory_usage_pct",
            "disk.total.read_bytes",
            "disk.total.write_bytes",
            "net.total.rx_bytes",
            "net.total.tx_bytes",
            "psi.memory.some.avg10",
            "psi.io.some.avg10",
            "proc.cpu_pct",
            "proc.rss",
        ]
    )
    # Agent heartbeat and log file rotation
    heartbeat_samples: int = 60  # Log heartbeat every N samples
    log_max_bytes: int = 5 * 1024 * 1024  # Max agent log size (5MB)
    log_backup_count: int = 3  # Number of rotated agent logs to keep


@dataclass
class TargetConfig:
    """Process to track. At most one of pid and pattern may be set."""

    pid: int = 0  # 0 = no pid target
    pattern: str = ""  # Regex searched in the full command line

    @property
    def enabled(self) -> bool:
        return bool(self.pid or self.pattern)


@dataclass
class LoggingConfig:
    """Detailed and summary metric logs, split into segments."""

    detailed_path: str = ""  # JSON Lines output, empty = disabled
    summary_path: str = ""  # Fixed-width text output, empty = disabled
    split_on_process: bool = False  # Rotate segments on target start/exit
    split_confirm_timeout: float = 5.0  # Seconds a manual split waits for confirmation
    flush_every: int = 10  # Flush the detailed log every N samples

    @property
    def enabled(self) -> bool:
        return bool(self.detailed_path or self.summary_path)


@dataclass
class ControlConfig:
    """Unix socket accepting external split requests."""

    enabled: bool = False
    socket_path: str = ""  # Empty = <runtime_dir>/control.sock


@dataclass
class AlertRuleConfig:
    """One threshold rule over a derived metric key (globs allowed)."""

    name: str
    key: str
    comparator: str = ">="
    threshold: float = 0.0
    samples: int = 3  # Consecutive samples before entering or clearing
    severity: str = "warning"


def _default_rules() -> list[AlertRuleConfig]:
    return [
        AlertRuleConfig("cpu_warn", "cpu.busy_pct", ">=", 80.0, 3, "warning"),
        AlertRuleConfig("cpu_crit", "cpu.busy_pct", ">=", 95.0, 3, "critical"),
        AlertRuleConfig("iowait_warn", "cpu.iowait_pct", ">=", 30.0, 3, "warning"),
        AlertRuleConfig("iowait_crit", "cpu.iowait_pct", ">=", 60.0, 3, "critical"),
        AlertRuleConfig("memory_warn", "mem.used_pct", ">=", 80.0, 3, "warning"),
        AlertRuleConfig("memory_crit", "mem.used_pct", ">=", 95.0, 3, "critical"),
        AlertRuleConfig("cgroup_warn", "cgroup.memory_usage_pct", ">=", 85.0, 3, "warning"),
        AlertRuleConfig("cgroup_crit", "cgroup.memory_usage_pct", ">=", 95.0, 3, "critical"),
        AlertRuleConfig("disk_util_warn", "disk.*.util_pct", ">=", 70.0, 3, "warning"),
        AlertRuleConfig("disk_util_crit", "disk.*.util_pct", ">=", 90.0, 3, "critical"),
        AlertRuleConfig("disk_queue_warn", "disk.*.in_flight", ">=", 5.0, 3, "warning"),
        AlertRuleConfig("disk_queue_crit", "disk.*.in_flight", ">=", 20.0, 3, "critical"),
    ]


@dataclass
class AlertsConfig:
    """Threshold alerting configuration."""

    enabled: bool = True
    rules: list[AlertRuleConfig] = field(default_factory=_default_rules)


@dataclass
class TUIConfig:
    """Dashboard configuration."""

    refresh_interval: float = 0.5  # Seconds between dashboard polls
    sparkline_height: int = 2  # Rows per sparkline (1-4)
    sparkline_mode: str = "braille"  # "braille" or "blocks"
    ok_color: str = "#50fa7b"  # Dracula green
    warning_color: str = "#f1fa8c"  # Dracula yellow
    critical_color: str = "#ff5555"  # Dracula red
    activity_max_entries: int = 50


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        elif isinstance(value, list) and value and is_dataclass(value[0]):
            array = tomlkit.aot()
            for item in value:
                array.append(_dataclass_to_table(item))
            table.add(f.name, array)
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    system: SystemConfig = field(default_factory=SystemConfig)
    target: TargetConfig = field(default_factory=TargetConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    control: ControlConfig = field(default_factory=ControlConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    tui: TUIConfig = field(default_factory=TUIConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "perfwatch"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for the agent log."""
        return Path.home() / ".local" / "state" / "perfwatch"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the control socket.

        Stored in /tmp/ so it's cleared on reboot, avoiding stale sockets.
        """
        return Path("/tmp/perfwatch")

    @property
    def log_path(self) -> Path:
        """Agent log path (structlog JSON Lines, not the metric logs)."""
        return self.state_dir / "agent.log"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for the control channel."""
        if self.control.socket_path:
            return Path(self.control.socket_path).expanduser()
        return self.runtime_dir / "control.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("system", "target", "logging", "control", "alerts", "tui"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() of an empty file are identical.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        # tomlkit containers unwrap to plain python values
        data = data.unwrap()

        return cls(
            system=_load_system_config(data.get("system", {})),
            target=_load_target_config(data.get("target", {})),
            logging=_load_logging_config(data.get("logging", {})),
            control=_load_control_config(data.get("control", {})),
            alerts=_load_alerts_config(data.get("alerts", {})),
            tui=_load_tui_config(data.get("tui", {})),
        )


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data, using dataclass defaults for missing fields."""
    d = SystemConfig()

    sample_interval = data.get("sample_interval", d.sample_interval)
    read_timeout = data.get("read_timeout", d.read_timeout)
    history_size = data.get("history_size", d.history_size)
    gap_policy = data.get("history_gap_policy", d.history_gap_policy)
    duration = data.get("duration", d.duration)

    if sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {sample_interval}")
    if read_timeout <= 0:
        raise ValueError(f"read_timeout must be > 0, got {read_timeout}")
    if history_size < 1:
        raise ValueError(f"history_size must be >= 1, got {history_size}")
    if duration < 0:
        raise ValueError(f"duration must be >= 0, got {duration}")
    if gap_policy not in VALID_GAP_POLICIES:
        raise ValueError(
            f"Invalid history_gap_policy: {gap_policy!r}. Must be one of {VALID_GAP_POLICIES}"
        )

    return SystemConfig(
        sample_interval=sample_interval,
        read_timeout=read_timeout,
        read_max_bytes=data.get("read_max_bytes", d.read_max_bytes),
        duration=duration,
        proc_root=data.get("proc_root", d.proc_root),
        sys_root=data.get("sys_root", d.sys_root),
        history_size=history_size,
        history_gap_policy=gap_policy,
        history_series=list(data.get("history_series", d.history_series)),
        heartbeat_samples=data.get("heartbeat_samples", d.heartbeat_samples),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_target_config(data: dict) -> TargetConfig:
    """Load target config from TOML data."""
    d = TargetConfig()
    pid = data.get("pid", d.pid)
    pattern = data.get("pattern", d.pattern)

    if pid < 0:
        raise ValueError(f"pid must be >= 0, got {pid}")
    if pid and pattern:
        raise ValueError("target.pid and target.pattern are mutually exclusive")

    return TargetConfig(pid=pid, pattern=pattern)


def _load_logging_config(data: dict) -> LoggingConfig:
    """Load metric log config from TOML data."""
    d = LoggingConfig()
    timeout = data.get("split_confirm_timeout", d.split_confirm_timeout)
    flush_every = data.get("flush_every", d.flush_every)

    if timeout <= 0:
        raise ValueError(f"split_confirm_timeout must be > 0, got {timeout}")
    if flush_every < 1:
        raise ValueError(f"flush_every must be >= 1, got {flush_every}")

    return LoggingConfig(
        detailed_path=data.get("detailed_path", d.detailed_path),
        summary_path=data.get("summary_path", d.summary_path),
        split_on_process=data.get("split_on_process", d.split_on_process),
        split_confirm_timeout=timeout,
        flush_every=flush_every,
    )


def _load_control_config(data: dict) -> ControlConfig:
    """Load control channel config from TOML data."""
    d = ControlConfig()
    return ControlConfig(
        enabled=data.get("enabled", d.enabled),
        socket_path=data.get("socket_path", d.socket_path),
    )


def _load_rule(data: dict) -> AlertRuleConfig:
    """Load one [[alerts.rules]] entry."""
    if "name" not in data or "key" not in data:
        raise ValueError(f"Alert rule needs 'name' and 'key', got {sorted(data)}")

    comparator = data.get("comparator", ">=")
    severity = data.get("severity", "warning")
    samples = data.get("samples", 3)

    if comparator not in VALID_COMPARATORS:
        raise ValueError(
            f"Invalid comparator for rule {data['name']!r}: {comparator!r}. "
            f"Must be one of {VALID_COMPARATORS}"
        )
    if severity not in VALID_SEVERITIES:
        raise ValueError(
            f"Invalid severity for rule {data['name']!r}: {severity!r}. "
            f"Must be one of {VALID_SEVERITIES}"
        )
    if samples < 1:
        raise ValueError(f"samples for rule {data['name']!r} must be >= 1, got {samples}")

    return AlertRuleConfig(
        name=data["name"],
        key=data["key"],
        comparator=comparator,
        threshold=float(data.get("threshold", 0.0)),
        samples=samples,
        severity=severity,
    )


def _load_alerts_config(data: dict) -> AlertsConfig:
    """Load alert rules. A present but empty rules list disables every rule."""
    d = AlertsConfig()
    rules_data = data.get("rules")
    rules = d.rules if rules_data is None else [_load_rule(r) for r in rules_data]
    return AlertsConfig(enabled=data.get("enabled", d.enabled), rules=rules)


def _load_tui_config(data: dict) -> TUIConfig:
    """Load TUI config from TOML data."""
    d = TUIConfig()
    mode = data.get("sparkline_mode", d.sparkline_mode)
    if mode not in ("braille", "blocks"):
        raise ValueError(f"Invalid sparkline_mode: {mode!r}. Must be 'braille' or 'blocks'")

    return TUIConfig(
        refresh_interval=data.get("refresh_interval", d.refresh_interval),
        sparkline_height=data.get("sparkline_height", d.sparkline_height),
        sparkline_mode=mode,
        ok_color=data.get("ok_color", d.ok_color),
        warning_color=data.get("warning_color", d.warning_color),
        critical_color=data.get("critical_color", d.critical_color),
        activity_max_entries=data.get("activity_max_entries", d.activity_max_entries),
    )
