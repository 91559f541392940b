# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from scraperrun.logging import SecretFilter


@pytest.fixture
def scraper_repo(tmp_path: Path) -> Path:
    """Create a small Ruby scraper checkout.

    Contains configuration files (Gemfile, Gemfile.lock, Procfile) and
    application files (scraper.rb, a lib/ directory, a dot-file and a
    symlink).

    Returns:
        Path to the checkout root.
    """
    repo_path = tmp_path / "scraper_repo"
    repo_path.mkdir()

    (repo_path / "Gemfile").write_text("source 'https://rubygems.org'\n")
    (repo_path / "Gemfile.lock").write_text("GEM\n  specs:\n")
    (repo_path / "Procfile").write_text(
        "scraper: bundle exec ruby scraper.rb\n"
    )
    (repo_path / "scraper.rb").write_text("puts 'Hello'\n")
    (repo_path / ".rubocop.yml").write_text("AllCops: {}\n")

    lib_dir = repo_path / "lib"
    lib_dir.mkdir()
    (lib_dir / "helper.rb").write_text("module Helper; end\n")

    (repo_path / "main.rb").symlink_to("scraper.rb")

    return repo_path


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Reset process-wide secret registrations between tests."""
    SecretFilter.clear_secrets()
    yield
    SecretFilter.clear_secrets()
