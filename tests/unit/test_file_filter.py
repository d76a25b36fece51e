#!/usr/bin/env python3
"""
Tests for the ingestion file inclusion policy.
"""

import sys
from pathlib import Path

import pytest

# Ensure scripts directory is on the path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "scripts"))

from file_filter import should_include_file


@pytest.mark.parametrize(
    "path",
    [
        "src/index.ts",
        "app/page.tsx",
        "server.py",
        "cmd/api/main.go",
        "db/schema.prisma",
        "migrations/001_init.sql",
        "config/settings.yaml",
        "package.json",
        "Dockerfile",
        "deploy/Dockerfile",
        "Makefile",
        ".env.example",
        "scripts/setup.sh",
    ],
)
def test_source_and_config_files_included(path):
    assert should_include_file(path)


@pytest.mark.parametrize(
    "path",
    [
        "node_modules/lodash/index.js",
        "vendor/github.com/pkg/errors/errors.go",
        "dist/bundle.js",
        "build/output.js",
        ".next/server/page.js",
        "src/__pycache__/mod.py",
        "public/app.min.js",
        "styles/site.min.css",
        "static/app.js.map",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "Cargo.lock",
        "assets/logo.png",
        "fonts/inter.woff2",
        "docs/guide.pdf",
    ],
)
def test_generated_vendored_and_binary_files_excluded(path):
    assert not should_include_file(path)


@pytest.mark.parametrize("path", ["README.md", "LICENSE", "notes.txt", ".env"])
def test_unlisted_files_excluded(path):
    assert not should_include_file(path)


@pytest.mark.parametrize(
    "path",
    [
        "app/checkout/route.ts",
        "src/layout/page.tsx",
        "src/about/index.ts",
        "lib/rebuild/steps.py",
        "pkg/distribution/client.go",
    ],
)
def test_directory_names_containing_excluded_names_included(path):
    assert should_include_file(path)


@pytest.mark.parametrize("path", ["out/index.js", "web/out/chunk.js", "packages/ui/dist/index.js"])
def test_nested_excluded_directories_excluded(path):
    assert not should_include_file(path)
