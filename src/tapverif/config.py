"""
TapVerif Configuration System
=============================

All configuration is Pydantic-validated and loaded from:
1. built-in defaults
2. an optional YAML profile
3. environment variables (TAPVERIF_ prefix, "__" for nesting), which win

Configuration errors are the only fatal errors in the package and are raised
here, at load time, as ConfigError.
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tapverif.tap import TapState
from tapverif.transaction import FaultKind


class ConfigError(ValueError):
    """Malformed or out-of-range configuration."""


class Standard(str, enum.Enum):
    IEEE_1149_1 = "IEEE_1149_1"
    IEEE_1149_4 = "IEEE_1149_4"
    IEEE_1149_6 = "IEEE_1149_6"
    IEEE_1149_7 = "IEEE_1149_7"
    CUSTOM = "CUSTOM"


class Strictness(str, enum.Enum):
    RELAXED = "relaxed"
    STANDARD = "standard"
    STRICT = "strict"


MANDATORY_INSTRUCTIONS = frozenset({"BYPASS", "IDCODE", "SAMPLE_PRELOAD", "EXTEST"})
BOUNDARY_INSTRUCTIONS = frozenset({"EXTEST", "SAMPLE_PRELOAD", "INTEST", "AC_EXTEST", "AC_SAMPLE"})

RegisterKind = Literal["bypass", "idcode", "boundary", "debug", "scratch", "user"]


# ─── Sub-configs ──────────────────────────────────────────────────


class InstructionDef(BaseModel):
    code: int = Field(ge=0)
    register: RegisterKind = "user"
    # Only needed for "scratch"/"user" registers; the others derive it
    length: Optional[int] = Field(default=None, ge=1)


def _default_instructions() -> dict[str, InstructionDef]:
    # BYPASS is added by ProtocolConfig as all-ones of ir_width
    return {
        "EXTEST":         InstructionDef(code=0x0, register="boundary"),
        "IDCODE":         InstructionDef(code=0x1, register="idcode"),
        "SAMPLE_PRELOAD": InstructionDef(code=0x2, register="boundary"),
        "INTEST":         InstructionDef(code=0x3, register="boundary"),
        "CLAMP":          InstructionDef(code=0x4, register="bypass"),
        "HIGHZ":          InstructionDef(code=0x5, register="bypass"),
        "DEBUG":          InstructionDef(code=0x8, register="debug"),
        "SCRATCH":        InstructionDef(code=0x9, register="scratch", length=16),
    }


class ProtocolConfig(BaseModel):
    standard: Standard = Standard.IEEE_1149_1
    strictness: Strictness = Strictness.STANDARD
    ir_width: int = Field(default=4, ge=2)
    max_ir_width: int = Field(default=32, ge=2, le=64)
    max_dr_width: int = Field(default=4096, ge=1)
    boundary_length: int = Field(default=16, ge=1)
    idcode: int = Field(default=0x149511C3, ge=0, le=0xFFFFFFFF)
    pin_count: int = Field(default=5, ge=2, le=5)
    instructions: dict[str, InstructionDef] = Field(default_factory=_default_instructions)
    debug_address_bits: int = Field(default=32, ge=1)
    debug_data_bits: int = Field(default=32, ge=1)
    soft_reset_cycles: int = Field(default=5, ge=1)
    reset_pulse_ns: float = Field(default=200.0, gt=0)
    end_state: str = "RUN_TEST_IDLE"

    @field_validator("instructions")
    @classmethod
    def _upper_names(cls, v: dict[str, InstructionDef]) -> dict[str, InstructionDef]:
        return {name.upper(): spec for name, spec in v.items()}

    @field_validator("end_state")
    @classmethod
    def _known_state(cls, v: str) -> str:
        if v.upper() not in TapState.__members__:
            raise ValueError(f"unknown TAP state '{v}'")
        return v.upper()

    @model_validator(mode="after")
    def _check_widths(self) -> ProtocolConfig:
        if self.ir_width > self.max_ir_width:
            raise ValueError(f"ir_width {self.ir_width} exceeds max_ir_width {self.max_ir_width}")
        if self.boundary_length > self.max_dr_width:
            raise ValueError(f"boundary_length {self.boundary_length} exceeds max_dr_width {self.max_dr_width}")
        if "BYPASS" not in self.instructions:
            self.instructions["BYPASS"] = InstructionDef(code=(1 << self.ir_width) - 1, register="bypass")
        limit = 1 << self.ir_width
        for name, spec in self.instructions.items():
            if spec.code >= limit:
                raise ValueError(f"instruction {name} code {spec.code:#x} does not fit in {self.ir_width} bits")
            if spec.register in ("scratch", "user") and spec.length is None:
                raise ValueError(f"instruction {name} needs an explicit register length")
        return self

    # ---- lookups ----

    @property
    def tap_end_state(self) -> TapState:
        return TapState[self.end_state]

    @property
    def debug_length(self) -> int:
        return self.debug_address_bits + self.debug_data_bits + 1

    def code_of(self, name: str) -> int:
        try:
            return self.instructions[name.upper()].code
        except KeyError:
            raise KeyError(f"Instruction '{name}' is not registered") from None

    def name_of(self, code: Optional[int]) -> Optional[str]:
        for name, spec in self.instructions.items():
            if spec.code == code:
                return name
        return None

    def register_length(self, name: str) -> int:
        spec = self.instructions[name.upper()]
        if spec.register == "bypass":
            return 1
        if spec.register == "idcode":
            return 32
        if spec.register == "boundary":
            return self.boundary_length
        if spec.register == "debug":
            return self.debug_length
        return spec.length


class TimingConfig(BaseModel):
    clock_period_ns: float = Field(default=100.0, gt=0)
    duty_cycle_pct: float = Field(default=50.0, gt=0, lt=100)
    duty_tolerance_pct: float = Field(default=5.0, ge=0)
    jitter_pct: float = Field(default=5.0, ge=0, le=100)
    min_setup_ns: float = Field(default=10.0, ge=0)
    min_hold_ns: float = Field(default=10.0, ge=0)
    max_propagation_ns: float = Field(default=60.0, gt=0)
    max_clock_to_out_ns: float = Field(default=15.0, gt=0)
    min_reset_pulse_ns: float = Field(default=50.0, ge=0)
    jitter_window: int = Field(default=100, ge=2)
    history_window: int = Field(default=1000, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> TimingConfig:
        if self.max_clock_to_out_ns > self.max_propagation_ns:
            raise ValueError("max_clock_to_out_ns cannot exceed max_propagation_ns")
        if self.min_setup_ns + self.min_hold_ns > self.clock_period_ns:
            raise ValueError("min_setup_ns + min_hold_ns exceed the nominal clock period")
        return self


class InjectionConfig(BaseModel):
    enabled: bool = False
    mode: Literal["random", "systematic"] = "random"
    rate: float = Field(default=10.0, ge=0, le=100)
    kinds: list[FaultKind] = Field(default_factory=lambda: list(FaultKind))
    seed: Optional[int] = None
    history: int = Field(default=1000, ge=1)

    @model_validator(mode="after")
    def _check_kinds(self) -> InjectionConfig:
        if self.enabled and not self.kinds:
            raise ValueError("injection enabled with an empty fault kind list")
        return self


class ScoreboardConfig(BaseModel):
    timing_tolerance_ns: float = Field(default=200.0, ge=0)
    transaction_timeout_ns: float = Field(default=1_000_000.0, gt=0)
    capacity: int = Field(default=1000, ge=1)
    event_history: int = Field(default=1000, ge=1)


class SchedulerConfig(BaseModel):
    max_concurrent: int = Field(default=4, ge=1)
    scenario_timeout_s: float = Field(default=30.0, gt=0)


class TargetConfig(BaseModel):
    """Parameters of the simulated device behind the signal interface."""
    tdo_delay_ns: float = Field(default=5.0, ge=0)
    drive_delay_ns: float = Field(default=0.0, ge=0)
    clock_jitter_ns: float = Field(default=0.0, ge=0)
    seed: Optional[int] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"


# ─── Root config ──────────────────────────────────────────────────


class VerifConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TAPVERIF_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    injection: InjectionConfig = Field(default_factory=InjectionConfig)
    scoreboard: ScoreboardConfig = Field(default_factory=ScoreboardConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    target: TargetConfig = Field(default_factory=TargetConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    recover_after_fault: bool = True

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        # Environment overrides the YAML profile passed as init kwargs
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def build_config(raw: dict[str, Any] | None = None) -> VerifConfig:
    """Validate a raw mapping. Every validation problem becomes a ConfigError."""
    try:
        return VerifConfig(**(raw or {}))
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def load_config(config_path: str | Path | None = None) -> VerifConfig:
    """
    Load configuration from a YAML profile, then apply environment variable
    overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{path}: top level must be a mapping")

    return build_config(raw)


def override_section(config: VerifConfig, section: str, **values: Any) -> VerifConfig:
    """
    Copy of `config` with fields of one section replaced. The section is
    validated again, so out-of-range values raise ConfigError here as they
    would at load time.
    """
    current = getattr(config, section)
    try:
        updated = type(current).model_validate({**current.model_dump(), **values})
    except ValidationError as e:
        raise ConfigError(str(e)) from e
    return config.model_copy(update={section: updated})
