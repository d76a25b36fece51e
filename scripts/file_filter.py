"""
File inclusion policy for repository ingestion.

Decides which tree entries are worth sending to the model: source, config
and infrastructure files in, vendored/build output, lockfiles, minified
bundles and binaries out.
"""

import re

EXCLUDED_DIRS = [
    "node_modules/",
    "vendor/",
    ".git/",
    "dist/",
    "build/",
    "out/",
    ".next/",
    "__pycache__/",
    ".venv/",
    "coverage/",
]

EXCLUDED_PATTERNS = [
    re.compile(r"\.min\.js$"),
    re.compile(r"\.min\.css$"),
    re.compile(r"\.map$"),
    re.compile(r"\.lock$"),
    re.compile(r"package-lock\.json$"),
    re.compile(r"yarn\.lock$"),
    re.compile(r"pnpm-lock\.yaml$"),
]

BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".webp",
    ".woff", ".woff2", ".ttf", ".eot",
    ".pdf", ".zip", ".tar", ".gz",
}

ALLOWED_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".py", ".go", ".rs", ".rb", ".php", ".java", ".kt", ".swift",
    ".json", ".yaml", ".yml", ".toml",
    ".sql", ".prisma", ".graphql",
    ".sh", ".bash",
}

ALLOWED_FILENAMES = {
    "Dockerfile",
    "Makefile",
    "Procfile",
    "docker-compose.yml",
    ".env.example",
    ".env.sample",
    ".env.template",
}


def _extension(path):
    basename = path.rsplit("/", 1)[-1]
    dot = basename.rfind(".")
    return basename[dot:] if dot != -1 else ""


def _in_excluded_dir(path):
    # Whole path segments only: "out/" must not match "checkout/"
    rooted = "/" + path
    return any("/" + directory in rooted for directory in EXCLUDED_DIRS)


def should_include_file(path):
    """Return True if *path* should be fetched and analyzed"""
    if _in_excluded_dir(path):
        return False

    if any(pattern.search(path) for pattern in EXCLUDED_PATTERNS):
        return False

    ext = _extension(path)
    if ext in BINARY_EXTENSIONS:
        return False

    if ext in ALLOWED_EXTENSIONS:
        return True

    # Exact basename match for extensionless / dotfile names
    return path.rsplit("/", 1)[-1] in ALLOWED_FILENAMES


__all__ = [
    "EXCLUDED_DIRS",
    "EXCLUDED_PATTERNS",
    "BINARY_EXTENSIONS",
    "ALLOWED_EXTENSIONS",
    "ALLOWED_FILENAMES",
    "should_include_file",
]
