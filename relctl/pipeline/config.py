"""Release pipeline configuration.

Module-level constants are the defaults of the holochain release; a
``relctl.toml`` file can override any of them. Tokens never live in the file:
they are read from the environment when the CLI context is built.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from relctl.core.config import ConfigError, load_toml
from relctl.core.result import Err, Ok, Result
from relctl.core.structured import (
    StrDict,
    as_str_dict,
    get_bool,
    get_int,
    get_list,
    get_str,
    get_str_list,
    get_table,
)
from relctl.pipeline.model import ExclusionRule, Platform, TestCommand, Trigger


PROJECT_NAME = "holochain"
REPO_SLUG = "holochain/holochain"
MAIN_BRANCH = "main"

HOLOCHAIN_REPO = Path("/tmp/holochain_repo")
HOLOCHAIN_RELEASE_SH = Path("/tmp/holochain_release.sh")
CACHE_DIR = Path(".relctl/cache")
STATE_DIR = Path(".relctl/state")

DEFAULT_NIXPKGS_BRANCH = "develop"
DEFAULT_HOLONIX_BRANCH = "main"

PRIMARY_PLATFORM = Platform.UBUNTU
MATRIX_PLATFORMS: tuple[Platform, ...] = (Platform.UBUNTU, Platform.MACOS)

CARGO_CACHE_PATHS: tuple[str, ...] = (
    ".cargo/bin/",
    ".cargo/registry/index/",
    ".cargo/registry/cache/",
    ".cargo/git/db/",
    "target/",
)

_NEXTEST_PREFIX = (
    "nix-shell --keep CARGO_NEXTEST_ARGS --keep CARGO_TEST_ARGS "
    '--fallback --pure --argstr flavor "coreDev" --run'
)
_TEST_PREFIX = 'nix-shell --keep CARGO_TEST_ARGS --fallback --pure --argstr flavor "coreDev" --run'

_NIX_TEST_SCRIPT = """\
set -x
git clean -fdx
# serve the release checkout so the published tag is not needed
git daemon --reuseaddr --base-path=. --export-all --verbose --detach

git clone "${HOLOCHAIN_NIXPKGS_URL}" "${HOLOCHAIN_NIXPKGS_REPO}" \\
  -b "${HOLOCHAIN_NIXPKGS_SOURCE_BRANCH}" --depth=1
cd "${HOLOCHAIN_NIXPKGS_REPO}"
git checkout -b "${RELEASE_BRANCH}"

if grep --quiet "${VERSION_COMPAT}" packages/holochain/versions/update_config.toml; then
  export VERSION_COMPAT="${VERSION_COMPAT}-ci"
  export TAG="${TAG}-ci"
  git -C "${HOLOCHAIN_REPO}" tag "${TAG}"
fi

printf '\\n[%s]\\ngit-src = "revision:%s"\\ngit-repo = "git://localhost/"\\nlair-version-req = "~0.0"\\n' \\
  "${VERSION_COMPAT}" "${TAG}" >> packages/holochain/versions/update_config.toml

nix-shell --arg flavors '["release"]' --pure --run "hnixpkgs-update-single ${VERSION_COMPAT}"
nix-build . -A "packages.holochain.holochainAllBinariesWithDeps.${VERSION_COMPAT}" --no-link

git clone "${HOLONIX_URL}" "${HOLONIX_REPO}" -b "${HOLONIX_SOURCE_BRANCH}" --depth=1
cd "${HOLONIX_REPO}"
nix-shell --run 'niv drop holochain-nixpkgs && niv add local --path "${HOLOCHAIN_NIXPKGS_REPO}" --name holochain-nixpkgs'
nix-shell --argstr holochainVersionId "${VERSION_COMPAT}" --arg include '{ test = true; }' \\
  --run 'holochain --version && hn-test'
"""

DEFAULT_TEST_COMMANDS: tuple[TestCommand, ...] = (
    TestCommand(
        name="cargo-test-standard",
        run=f"{_NEXTEST_PREFIX} hc-test-standard-nextest",
        timeout_minutes=20,
        max_attempts={Platform.UBUNTU: 2, Platform.MACOS: 2},
        restores_cache=True,
        saves_cache=True,
        ignore_error_on_secondary_platform=True,
        cache_paths=CARGO_CACHE_PATHS,
    ),
    TestCommand(
        name="cargo-test-slow",
        run=f"{_NEXTEST_PREFIX} hc-test-slow-nextest",
        timeout_minutes=20,
        max_attempts={Platform.UBUNTU: 2, Platform.MACOS: 2},
        restores_cache=True,
        saves_cache=True,
        ignore_error_on_secondary_platform=True,
        cache_paths=CARGO_CACHE_PATHS,
    ),
    TestCommand(
        name="cargo-test-static",
        run=f"{_TEST_PREFIX} hc-static-checks",
        timeout_minutes=5,
        max_attempts={Platform.UBUNTU: 1, Platform.MACOS: 1},
        restores_cache=True,
        saves_cache=True,
        cache_paths=CARGO_CACHE_PATHS,
    ),
    TestCommand(
        name="cargo-test-wasm",
        run=f"{_TEST_PREFIX} hc-test-wasm",
        timeout_minutes=5,
        max_attempts={Platform.UBUNTU: 6, Platform.MACOS: 1},
        restores_cache=True,
        saves_cache=True,
        cache_paths=CARGO_CACHE_PATHS,
    ),
    TestCommand(
        name="nix-test",
        run=_NIX_TEST_SCRIPT,
        timeout_minutes=90,
        max_attempts={Platform.UBUNTU: 1, Platform.MACOS: 1},
    ),
)

DEFAULT_EXCLUSIONS: tuple[ExclusionRule, ...] = (
    ExclusionRule(trigger=Trigger.PULL_REQUEST, platform=Platform.MACOS),
    ExclusionRule(trigger=Trigger.PULL_REQUEST, test="nix-test"),
)

PREPARE_COMMAND = (
    'nix-shell --argstr flavor release --pure --run "release-automation '
    '--workspace-path=$HOLOCHAIN_REPO --log-level=debug release '
    '--steps=CreateReleaseBranch,BumpReleaseVersions"'
)
PUBLISH_COMMAND = (
    "nix-shell --argstr flavor release --keep CARGO_REGISTRY_TOKEN --pure --run "
    '"release-automation --workspace-path=$PWD --log-level=trace release '
    '--steps=PublishToCratesIo,AddOwnersToCratesIo"'
)

PR_LABELS: tuple[str, ...] = ("release", "autoupdate:opt-in")
PR_BODY = "Please double-check the consistency of the CHANGELOG.md files"
CHANGELOG_URL = f"https://github.com/{REPO_SLUG}/blob/{MAIN_BRANCH}/CHANGELOG.md"

CHAT_URL = "https://chat.holochain.org/api/v4/posts"
CHAT_CHANNEL_RELEASE = "cdxeytdc97ff3e1jbdzgyfcduo"  # dev/HC-releases
CHAT_CHANNEL_CI = "uzjosy5d3fdcxe35oyw9naihfw"  # dev/holochain-rsm/CI
STATUS_CONTEXT = "github-actions/release-holochain"
STATUS_DESCRIPTION = "release workflow completed"

DEBUG_COMMAND = "upterm host --accept --force-command bash"
MAINTAINERS: tuple[str, ...] = (
    "steveeJ",
    "jost-s",
    "freesig",
    "neonphog",
    "thedavidmeister",
    "maackle",
)


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    name: str = PROJECT_NAME
    repo_slug: str = REPO_SLUG
    main_branch: str = MAIN_BRANCH


@dataclass(frozen=True, slots=True)
class PathsConfig:
    repo: Path = HOLOCHAIN_REPO
    release_sh: Path = HOLOCHAIN_RELEASE_SH
    cache_dir: Path = CACHE_DIR
    state_dir: Path = STATE_DIR


@dataclass(frozen=True, slots=True)
class MatrixConfig:
    platforms: tuple[Platform, ...] = MATRIX_PLATFORMS
    primary: Platform = PRIMARY_PLATFORM
    test_commands: tuple[TestCommand, ...] = DEFAULT_TEST_COMMANDS
    exclusions: tuple[ExclusionRule, ...] = DEFAULT_EXCLUSIONS
    # None: one worker per cell.
    max_parallel: int | None = None


@dataclass(frozen=True, slots=True)
class ReleaseStepsConfig:
    prepare_command: str = PREPARE_COMMAND
    publish_command: str = PUBLISH_COMMAND
    pr_labels: tuple[str, ...] = PR_LABELS
    pr_body: str = PR_BODY
    changelog_url: str = CHANGELOG_URL


@dataclass(frozen=True, slots=True)
class NotifyConfig:
    chat_url: str | None = CHAT_URL
    release_channel_id: str = CHAT_CHANNEL_RELEASE
    ci_channel_id: str = CHAT_CHANNEL_CI
    status_context: str = STATUS_CONTEXT
    status_description: str = STATUS_DESCRIPTION
    # Filled from the environment, never from the file.
    chat_token: str | None = None
    github_token: str | None = None


@dataclass(frozen=True, slots=True)
class DebugConfig:
    command: str = DEBUG_COMMAND
    maintainers: tuple[str, ...] = MAINTAINERS


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    matrix: MatrixConfig = field(default_factory=MatrixConfig)
    release: ReleaseStepsConfig = field(default_factory=ReleaseStepsConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    debug: DebugConfig = field(default_factory=DebugConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineConfig:
        """Create a config from parsed TOML.

        Raises:
            ValueError: on values that cannot be mapped to pipeline types.
        """
        project: StrDict = get_table(data, "project") or {}
        paths: StrDict = get_table(data, "paths") or {}
        matrix: StrDict = get_table(data, "matrix") or {}
        release: StrDict = get_table(data, "release") or {}
        notify: StrDict = get_table(data, "notify") or {}
        debug: StrDict = get_table(data, "debug") or {}

        platforms = _platforms(get_str_list(matrix, "platforms")) or MATRIX_PLATFORMS
        primary_name = get_str(matrix, "primary")
        primary = _platform(primary_name) if primary_name else PRIMARY_PLATFORM
        if primary not in platforms:
            raise ValueError(f"primary platform {primary} is not in matrix.platforms")

        commands_raw = get_list(data, "test_commands")
        commands = (
            tuple(_test_command(item) for item in commands_raw)
            if commands_raw is not None
            else DEFAULT_TEST_COMMANDS
        )
        exclude_raw = get_list(data, "exclude")
        exclusions = (
            tuple(_exclusion(item) for item in exclude_raw)
            if exclude_raw is not None
            else DEFAULT_EXCLUSIONS
        )

        repo_slug = get_str(project, "repo_slug") or REPO_SLUG
        main_branch = get_str(project, "main_branch") or MAIN_BRANCH
        labels = get_str_list(release, "pr_labels")
        maintainers = get_str_list(debug, "maintainers")

        return cls(
            project=ProjectConfig(
                name=get_str(project, "name") or PROJECT_NAME,
                repo_slug=repo_slug,
                main_branch=main_branch,
            ),
            paths=PathsConfig(
                repo=_path(paths, "repo", HOLOCHAIN_REPO),
                release_sh=_path(paths, "release_sh", HOLOCHAIN_RELEASE_SH),
                cache_dir=_path(paths, "cache_dir", CACHE_DIR),
                state_dir=_path(paths, "state_dir", STATE_DIR),
            ),
            matrix=MatrixConfig(
                platforms=platforms,
                primary=primary,
                test_commands=commands,
                exclusions=exclusions,
                max_parallel=get_int(matrix, "max_parallel"),
            ),
            release=ReleaseStepsConfig(
                prepare_command=get_str(release, "prepare_command") or PREPARE_COMMAND,
                publish_command=get_str(release, "publish_command") or PUBLISH_COMMAND,
                pr_labels=tuple(labels) if labels is not None else PR_LABELS,
                pr_body=get_str(release, "pr_body") or PR_BODY,
                changelog_url=get_str(release, "changelog_url")
                or f"https://github.com/{repo_slug}/blob/{main_branch}/CHANGELOG.md",
            ),
            notify=NotifyConfig(
                chat_url=get_str(notify, "chat_url") or CHAT_URL,
                release_channel_id=get_str(notify, "release_channel_id") or CHAT_CHANNEL_RELEASE,
                ci_channel_id=get_str(notify, "ci_channel_id") or CHAT_CHANNEL_CI,
                status_context=get_str(notify, "status_context") or STATUS_CONTEXT,
                status_description=get_str(notify, "status_description") or STATUS_DESCRIPTION,
            ),
            debug=DebugConfig(
                command=get_str(debug, "command") or DEBUG_COMMAND,
                maintainers=tuple(maintainers) if maintainers is not None else MAINTAINERS,
            ),
        )


def _path(table: Mapping[str, object], key: str, default: Path) -> Path:
    value = get_str(table, key)
    return Path(value).expanduser() if value else default


def _platform(name: str) -> Platform:
    try:
        return Platform(name)
    except ValueError:
        known = ", ".join(p.value for p in Platform)
        raise ValueError(f"unknown platform '{name}' (known: {known})") from None


def _platforms(names: list[str] | None) -> tuple[Platform, ...] | None:
    if not names:
        return None
    return tuple(_platform(n) for n in names)


def _test_command(item: object) -> TestCommand:
    table = as_str_dict(item)
    if table is None:
        raise ValueError("test_commands entries must be tables")

    name = get_str(table, "name")
    run = get_str(table, "run")
    timeout = get_int(table, "timeout_minutes")
    if name is None or run is None or timeout is None:
        raise ValueError("test_commands entries need name, run and timeout_minutes")

    attempts_tbl = get_table(table, "max_attempts") or {}
    attempts: dict[Platform, int] = {}
    for platform_name in attempts_tbl:
        count = get_int(attempts_tbl, platform_name)
        if count is None or count < 1:
            raise ValueError(f"{name}: max_attempts.{platform_name} must be a positive integer")
        attempts[_platform(platform_name)] = count

    restores = get_bool(table, "restores_cache") or False
    saves = get_bool(table, "saves_cache") or False
    cache_paths = get_str_list(table, "cache_paths")
    if cache_paths is None and (restores or saves):
        cache_paths = list(CARGO_CACHE_PATHS)

    return TestCommand(
        name=name,
        run=run,
        timeout_minutes=timeout,
        max_attempts=attempts,
        restores_cache=restores,
        saves_cache=saves,
        ignore_error_on_secondary_platform=get_bool(table, "ignore_error_on_secondary_platform")
        or False,
        cache_paths=tuple(cache_paths or ()),
    )


def _exclusion(item: object) -> ExclusionRule:
    table = as_str_dict(item)
    if table is None:
        raise ValueError("exclude entries must be tables")
    trigger = get_str(table, "trigger")
    platform = get_str(table, "platform")
    return ExclusionRule(
        trigger=Trigger(trigger) if trigger else None,
        platform=_platform(platform) if platform else None,
        test=get_str(table, "test"),
    )


def load_pipeline_config(path: Path) -> Result[PipelineConfig, ConfigError]:
    """Load and validate a pipeline config file.

    Args:
        path: Path to relctl.toml

    Returns:
        Ok(PipelineConfig) on success, Err(ConfigError) on failure
    """
    result = load_toml(path)
    if isinstance(result, Err):
        return result

    try:
        return Ok(PipelineConfig.from_dict(result.value))
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config structure: {e}", path=path))
