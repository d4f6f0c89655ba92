"""Tests for install plan construction."""

import pytest

from neurodesk.plan.builder import (
    HomebrewProbe,
    InstallPlanBuilder,
    classify_target,
    normalize_app_name,
    parse_targets,
    repository_name,
)
from neurodesk.plan.models import InstallTarget, Plan, SafetyLevel, Step, SudoMode, TargetKind


class TestParseTargets:
    """Test splitting free text into target names."""

    def test_comma_and_and(self):
        assert parse_targets("install htop, jq and wget then verify") == ["htop", "jq", "wget"]

    def test_system_wide_clause_dropped(self):
        assert parse_targets("install wget system-wide and verify") == ["wget"]

    def test_repeated_verb(self):
        assert parse_targets("install htop and install jq") == ["htop", "jq"]

    def test_no_verb(self):
        assert parse_targets("what is htop") == []

    def test_verb_needs_word_boundary(self):
        assert parse_targets("reinstallation notes") == []


class TestClassifyTarget:
    """Test target kind classification."""

    def test_formula(self):
        assert classify_target("htop") == InstallTarget(TargetKind.FORMULA, "htop")

    def test_formula_keeps_verify(self):
        assert classify_target("jq", verify=True).verify is True

    def test_alias_to_cask(self):
        assert classify_target("vscode") == InstallTarget(
            TargetKind.CASK, "visual-studio-code"
        )

    def test_multi_word_is_cask(self):
        target = classify_target("visual studio code")
        assert target.kind is TargetKind.CASK
        assert target.value == "visual-studio-code"

    def test_explicit_cask(self):
        assert classify_target("cask firefox") == InstallTarget(TargetKind.CASK, "firefox")

    def test_mas_id(self):
        assert classify_target("497799835").kind is TargetKind.MAS_ID

    def test_normalize_unknown_name(self):
        assert normalize_app_name("  ripgrep ") == "ripgrep"

    def test_repository_name(self):
        assert repository_name("https://github.com/junegunn/fzf.git") == "fzf"


class TestHomebrewProbe:
    """Test Homebrew location detection."""

    def test_installed_prefix(self, brew_probe):
        assert brew_probe.prefix() == "/opt/homebrew"
        assert brew_probe.brew_installed()
        assert brew_probe.brew_binary() == "/opt/homebrew/bin/brew"

    def test_intel_default(self):
        probe = HomebrewProbe(["/opt/homebrew", "/usr/local"], exists=lambda p: False, machine=lambda: "x86_64")
        assert probe.prefix() == "/usr/local"
        assert probe.brew_binary() == "brew"
        assert not probe.brew_installed()

    def test_path_directories(self, brew_probe):
        assert brew_probe.path_directories() == [
            "/opt/homebrew/bin", "/opt/homebrew/sbin", "/usr/local/bin", "/usr/local/sbin"
        ]

    def test_bin_directories_detected_first(self):
        probe = HomebrewProbe(["/opt/homebrew", "/usr/local"], exists=lambda p: p == "/usr/local/bin/brew")
        assert probe.bin_directories()[:2] == ["/usr/local/bin", "/usr/local/sbin"]


class TestInstallPlanBuilder:
    """Test plan shapes."""

    def test_two_formulae(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("install htop and jq")

        assert [s.title for s in plan.steps] == [
            "brew update",
            "brew install/upgrade htop",
            "brew install/upgrade jq",
        ]
        assert all(s.safety is SafetyLevel.SAFE for s in plan.steps)
        assert not plan.requires_consent
        assert plan.description == "Install formulae: htop, jq"
        assert "'/opt/homebrew/bin/brew' install 'htop'" in plan.steps[1].command

    def test_cask_needs_consent(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("install visual studio code")

        cask_steps = [s for s in plan.steps if "--cask" in s.title]
        assert len(cask_steps) == 1
        assert cask_steps[0].safety is SafetyLevel.NEEDS_CONSENT
        assert "'visual-studio-code'" in cask_steps[0].command
        assert plan.requires_consent

    def test_update_per_kind_group(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("install htop and slack")
        titles = [s.title for s in plan.steps]
        assert titles == [
            "brew update",
            "brew install/upgrade htop",
            "brew update",
            "brew install/upgrade --cask slack",
        ]
        assert plan.description == "Install formulae: htop • casks: slack"

    def test_verify_steps(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("install htop and verify")
        assert [s.title for s in plan.steps] == ["brew update", "brew install/upgrade htop", "verify htop"]

    def test_homebrew_bootstrap_when_missing(self, no_brew_probe):
        plan = InstallPlanBuilder(no_brew_probe).build("install jq")
        first = plan.steps[0]

        assert first.title == "Install Homebrew"
        assert first.safety is SafetyLevel.PRIVILEGED
        assert first.requires_sudo
        assert first.sudo_mode is SudoMode.PRIME
        assert plan.requires_consent
        assert "'brew' install 'jq'" in plan.steps[2].command

    def test_system_wide(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("install wget system-wide and verify")
        titles = [s.title for s in plan.steps]

        assert titles == [
            "Add Homebrew to system PATH",
            "brew update",
            "brew install/upgrade wget",
            "verify wget",
        ]
        path_step = plan.steps[0]
        assert path_step.requires_sudo
        assert "'/etc/paths.d/homebrew'" in path_step.command
        assert "'/opt/homebrew/bin'" in path_step.command

    def test_path_only(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("make homebrew available to all users")
        assert plan.description == "Ensure Homebrew is on system-wide PATH"
        assert [s.title for s in plan.steps] == ["Add Homebrew to system PATH"]

    def test_mas(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("install app store id: 497799835")

        assert plan.description == "Install Mac App Store app 497799835"
        assert [s.title for s in plan.steps] == [
            "Install mas via Homebrew (if missing)",
            "mas install/upgrade 497799835",
        ]
        assert plan.steps[-1].safety is SafetyLevel.NEEDS_CONSENT

    def test_git_with_known_installer(self, brew_probe):
        url = "https://github.com/junegunn/fzf.git"
        plan = InstallPlanBuilder(brew_probe).build(f"install {url}")

        assert plan.description == f"Install from Git: {url}"
        titles = [s.title for s in plan.steps]
        assert titles == [
            "Ensure git (Command Line Tools)",
            "Install git via Homebrew (if still missing)",
            "clone/update fzf",
            "run install command",
        ]
        assert f"git clone --depth=1 '{url}' '/usr/local/src/fzf'" in plan.steps[2].command
        assert "cd '/usr/local/src/fzf' && /bin/bash -c './install --all'" == plan.steps[3].command

    def test_git_destination(self, brew_probe, isolated_home):
        plan = InstallPlanBuilder(brew_probe).build(
            "install https://example.com/tools/thing.git dest ~/src"
        )
        assert f"'{isolated_home}/src/thing'" in plan.steps[-1].command
        assert plan.steps[-1].title == "clone/update thing"

    @pytest.mark.parametrize("text", [
        "what time is it?",
        "list the files in my downloads folder",
        "how much disk space is left",
    ])
    def test_not_an_install_request(self, brew_probe, text):
        assert InstallPlanBuilder(brew_probe).build(text) is None

    def test_idempotent(self, brew_probe):
        builder = InstallPlanBuilder(brew_probe)
        text = "install htop, jq and visual studio code system-wide and verify"
        first = builder.build(text)
        second = builder.build(text)

        assert first == second
        assert [s.command for s in first.steps] == [s.command for s in second.steps]

    def test_hostile_name_is_quoted(self, brew_probe):
        plan = InstallPlanBuilder(brew_probe).build("install jq;rm")
        assert "'jq;rm'" in plan.steps[1].command


class TestModels:
    """Test plan model invariants."""

    def test_sudo_step_cannot_be_safe(self):
        with pytest.raises(ValueError):
            Step("x", "true", 10, requires_sudo=True)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            Step("x", "true", 0)

    def test_plan_stores_tuple(self):
        plan = Plan("p", [Step("a", "true", 5)])
        assert isinstance(plan.steps, tuple)
        assert len(plan) == 1
        assert not plan.requires_sudo

    def test_badge(self):
        assert SafetyLevel.NEEDS_CONSENT.badge == "[consent]"
