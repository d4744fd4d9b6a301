"""Pydantic models for the controller configuration snapshot.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. An immutable snapshot that worker threads can share for a whole cycle
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import (
    DEFAULT_ADDRESS,
    DEFAULT_CONCURRENCY,
    DEFAULT_REPOS_PATH,
    DEFAULT_UPDATE_INTERVAL_SECONDS,
)


class RepoConfig(BaseModel):
    """A source repository that backs one or more stacks."""

    model_config = {"extra": "ignore", "frozen": True}

    url: Annotated[str, Field(min_length=1)]
    username: str | None = None
    password: str | None = None
    password_file: str | None = None

    @model_validator(mode="after")
    def validate_credentials(self) -> RepoConfig:
        if self.password and self.password_file:
            raise ValueError("password and password_file are mutually exclusive")
        return self


class StackConfig(BaseModel):
    """A named deployable unit sourced from a repository."""

    model_config = {"extra": "ignore", "frozen": True}

    repo: Annotated[str, Field(min_length=1)]
    branch: str = "main"
    compose_file: Annotated[str, Field(min_length=1)]
    values_file: str | None = None

    @field_validator("compose_file", "values_file")
    @classmethod
    def validate_relative_path(cls, v: str | None) -> str | None:
        # Files are resolved inside the repo checkout
        if v is not None and (v.startswith("/") or ".." in v.split("/")):
            raise ValueError(f"path must be relative to the repository root: {v}")
        return v


class ControllerConfig(BaseModel):
    """Configuration snapshot, immutable for the duration of a cycle."""

    model_config = {"extra": "ignore", "frozen": True}

    repos_path: str = DEFAULT_REPOS_PATH
    update_interval: Annotated[int, Field(ge=1)] = DEFAULT_UPDATE_INTERVAL_SECONDS
    # Non-positive values are tolerated; the scheduler warns and defaults
    concurrency: int | None = DEFAULT_CONCURRENCY
    address: str = DEFAULT_ADDRESS
    repos: dict[str, RepoConfig] = Field(default_factory=dict)
    stacks: dict[str, StackConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_stack_repos(self) -> ControllerConfig:
        unknown = sorted(
            f"{name} -> {stack.repo}"
            for name, stack in self.stacks.items()
            if stack.repo not in self.repos
        )
        if unknown:
            raise ValueError(f"stacks reference unknown repos: {', '.join(unknown)}")
        return self

    def repo_for(self, stack_name: str) -> RepoConfig:
        """Get the repository config backing a stack."""
        return self.repos[self.stacks[stack_name].repo]
