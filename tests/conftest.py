"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add the project root and scripts directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent.parent / "scripts"))

import org_readme_to_md
from tests.fixtures import SAMPLE_README_ORG, SAMPLE_CHANGELOG, create_sample_ast
from tests.fixtures.fake_tools import FakeTools


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "integration: mark as integration test")
    config.addinivalue_line("markers", "pandoc: mark as requiring pandoc on PATH")


# ============================================================================
# Base Fixtures
# ============================================================================


@pytest.fixture
def fake_tools(monkeypatch):
    """Replace pandoc and the changelog command with in-process fakes."""
    tools = FakeTools()
    monkeypatch.setattr(org_readme_to_md.subprocess, "run", tools.run)
    monkeypatch.setattr(org_readme_to_md.shutil, "which", tools.which)
    return tools


@pytest.fixture
def project_dir(tmp_path):
    """Create a project directory containing README.org."""
    (tmp_path / "README.org").write_text(SAMPLE_README_ORG, encoding="utf-8")
    return tmp_path


@pytest.fixture
def project_with_changelog(project_dir):
    """Create a project directory with README.org and CHANGELOG.md."""
    (project_dir / "CHANGELOG.md").write_text(SAMPLE_CHANGELOG, encoding="utf-8")
    return project_dir


@pytest.fixture
def sample_ast():
    """Create a fresh sample pandoc AST."""
    return create_sample_ast()
