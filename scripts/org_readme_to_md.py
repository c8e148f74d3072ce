#!/usr/bin/python3.12
# Copyright 2025 Red Hat, Inc.
# All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you may
# not use this file except in compliance with the License. You may obtain
# a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
# WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the
# License for the specific language governing permissions and limitations
# under the License.
"""Generate the registry README.md from README.org at package time.

The generated README.md is what the package registry displays on the crate
page. Code blocks tagged ``rust`` that carry rustdoc header arguments in the
org source (``:no_run yes``, ``:should_panic yes``...) are re-emitted with a
``rust,no_run`` style info string, which is what rustdoc expects instead of
pandoc's ``{.rust .no_run}`` attribute syntax.
"""

import argparse
import enum
import filecmp
import json
import logging
import os
from pathlib import Path
import re
import shutil
import stat
import subprocess
import sys
import tempfile
from typing import Iterable, Mapping

from packaging.version import InvalidVersion, Version

LOG = logging.getLogger(__name__)

SOURCE_FILE = "README.org"
TARGET_FILE = "README.md"
CHANGELOG_FILE = "CHANGELOG.md"
CHANGELOG_COMMAND = "gitchangelog"
CODE_LANGUAGE = "rust"

# Oldest pandoc with a JSON reader and a CommonMark writer honouring raw
# markdown blocks
MIN_PANDOC_VERSION = Version("2.0")

# Scan order of the rustdoc annotations, with the attribute spellings
# accepted for each one (after hyphens are turned into underscores)
RUSTDOC_ANNOTATIONS = (
    ("no_run", ("no_run", "norun")),
    ("ignore", ("ignore",)),
    ("compile_fail", ("compile_fail",)),
    ("should_panic", ("should_panic",)),
)


class Outcome(enum.Enum):
    """Terminal state of a README generation run."""

    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    UPDATED = "updated"


class DependencyError(RuntimeError):
    """A required external tool is missing or too old."""


def get_argument_parser() -> argparse.ArgumentParser:
    """Get ArgumentParser."""
    parser = argparse.ArgumentParser(
        prog="org-readme-to-md",
        description="Convert README.org to the README.md shown by the package registry.",
    )
    parser.add_argument(
        "-C",
        "--directory",
        required=False,
        default=Path("."),
        type=Path,
        help="Project directory; relative file names are resolved against it",
    )
    parser.add_argument(
        "-s",
        "--source",
        required=False,
        default=Path(SOURCE_FILE),
        type=Path,
    )
    parser.add_argument(
        "-o",
        "--target",
        required=False,
        default=Path(TARGET_FILE),
        type=Path,
    )
    parser.add_argument(
        "-c",
        "--changelog-file",
        required=False,
        default=Path(CHANGELOG_FILE),
        type=Path,
        help="Static changelog appended when the changelog command is not available",
    )
    parser.add_argument(
        "--changelog-command",
        required=False,
        default=CHANGELOG_COMMAND,
        type=str,
        help="Command printing the changelog on stdout, run without arguments",
    )
    parser.add_argument(
        "--no-changelog",
        action="store_true",
        help="Do not append any changelog",
    )
    parser.add_argument(
        "-l",
        "--language",
        required=False,
        default=CODE_LANGUAGE,
        type=str,
        help="Language of the code blocks whose annotations are rewritten",
    )
    parser.add_argument(
        "-f",
        "--from",
        dest="fmt_from",
        required=False,
        default="org",
        type=str,
    )
    parser.add_argument(
        "-t",
        "--to",
        dest="fmt_to",
        required=False,
        default="commonmark",
        type=str,
    )
    parser.add_argument(
        "--pandoc",
        required=False,
        default="pandoc",
        type=str,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
    )

    return parser


def normalize_attribute_key(key: str) -> str:
    """Normalize an attribute key so ``no-run`` and ``no_run`` compare equal."""
    return key.replace("-", "_")


def rustdoc_annotations(attributes: Mapping[str, str] | Iterable) -> list[str]:
    """Get the rustdoc annotations requested by a code block's attributes.

    Args:
        attributes: Mapping or iterable of ``(key, value)`` pairs, as found
            in a pandoc ``Attr``. Values are ignored.

    Returns:
        Recognized annotations in the fixed rustdoc scan order, each at most
        once. Unrecognized keys are dropped.
    """
    if isinstance(attributes, Mapping):
        keys = attributes.keys()
    else:
        keys = [pair[0] for pair in attributes]
    present = {normalize_attribute_key(str(key)) for key in keys}

    return [
        annotation
        for annotation, spellings in RUSTDOC_ANNOTATIONS
        if present.intersection(spellings)
    ]


def rustdoc_info_string(
    classes: list[str],
    attributes: Mapping[str, str] | Iterable,
    language: str = CODE_LANGUAGE,
) -> str | None:
    """Get the fenced code block info string, or None to keep the block as is."""
    if not classes or classes[0] != language:
        return None

    annotations = rustdoc_annotations(attributes)
    if not annotations:
        return None

    return ",".join([language] + annotations)


def rewrite_code_block(block: dict, language: str = CODE_LANGUAGE) -> dict | None:
    """Rewrite a pandoc CodeBlock node into a raw markdown fenced block.

    Returns None when the block has no rustdoc annotation to carry over.
    """
    (_identifier, classes, attributes), text = block["c"]
    info = rustdoc_info_string(classes, attributes, language)
    if info is None:
        return None

    if not text.endswith("\n"):
        text += "\n"
    return {"t": "RawBlock", "c": ["markdown", f"```{info}\n{text}```"]}


def apply_code_block_filter(document, language: str = CODE_LANGUAGE) -> int:
    """Rewrite annotated code blocks of a pandoc JSON document in place.

    The whole tree is walked so blocks nested in lists, quotes, divs or
    tables are reached too.

    Returns:
        Number of rewritten code blocks
    """
    rewritten = 0

    def walk(node):
        nonlocal rewritten
        if isinstance(node, list):
            for index, child in enumerate(node):
                if isinstance(child, dict) and child.get("t") == "CodeBlock":
                    replacement = rewrite_code_block(child, language)
                    if replacement is not None:
                        node[index] = replacement
                        rewritten += 1
                    continue
                walk(child)
        elif isinstance(node, dict):
            for value in node.values():
                walk(value)

    walk(document)
    return rewritten


def check_pandoc(
    pandoc: str = "pandoc", minimum: Version = MIN_PANDOC_VERSION
) -> Version | None:
    """Ensure pandoc is installed and recent enough.

    Returns:
        The detected pandoc version, or None when it could not be parsed

    Raises:
        DependencyError: If pandoc is not on PATH or older than ``minimum``
    """
    if shutil.which(pandoc) is None:
        raise DependencyError(f"{pandoc} is required but was not found on PATH")

    result = subprocess.run(
        [pandoc, "--version"], check=True, capture_output=True, text=True
    )
    first_line = result.stdout.splitlines()[0] if result.stdout else ""
    match = re.search(r"(\d+(?:\.\d+)+)", first_line)
    try:
        version = Version(match.group(1)) if match else None
    except InvalidVersion:
        version = None

    if version is None:
        LOG.warning(f"Can not detect pandoc version from => {first_line!r}")
        return None

    if version < minimum:
        raise DependencyError(
            f"{pandoc} {version} is too old, at least {minimum} is required"
        )

    LOG.debug("Using %s %s", pandoc, version)
    return version


def run_pandoc_json(
    source: Path, fmt_from: str = "org", pandoc: str = "pandoc", cwd: Path | None = None
):
    """Read a document into pandoc's JSON AST."""
    cmd = [pandoc, str(source), "-f", fmt_from, "-t", "json"]
    result = subprocess.run(
        cmd,
        check=True,
        capture_output=True,
        text=True,
        encoding="utf-8",
        cwd=str(cwd) if cwd else None,
    )
    return json.loads(result.stdout)


def render_pandoc_json(
    document,
    output: Path,
    fmt_to: str = "commonmark",
    pandoc: str = "pandoc",
    cwd: Path | None = None,
) -> None:
    """Write a pandoc JSON AST to ``output`` in the ``fmt_to`` format.

    The AST is handed to pandoc through a temporary file that is removed
    whether pandoc succeeds or not.
    """
    ast_temp = tempfile.NamedTemporaryFile(
        mode="w", suffix=".json", encoding="utf-8", delete=False
    )
    ast_temp_path = Path(ast_temp.name)
    try:
        with ast_temp:
            json.dump(document, ast_temp)

        cmd = [
            pandoc,
            str(ast_temp_path),
            "-f",
            "json",
            "-t",
            fmt_to,
            "-o",
            str(output.absolute()),
        ]
        subprocess.run(
            cmd, check=True, capture_output=True, cwd=str(cwd) if cwd else None
        )
    finally:
        if ast_temp_path.exists():
            ast_temp_path.unlink()


def convert_document(
    source: Path,
    output: Path,
    language: str = CODE_LANGUAGE,
    fmt_from: str = "org",
    fmt_to: str = "commonmark",
    pandoc: str = "pandoc",
    cwd: Path | None = None,
) -> int:
    """Convert ``source`` to markdown in ``output``, rewriting code blocks.

    Returns:
        Number of code blocks whose rustdoc annotations were rewritten

    Raises:
        subprocess.CalledProcessError: If a pandoc command fails
    """
    LOG.debug("Converting: %s -> %s", source, output)
    try:
        document = run_pandoc_json(source, fmt_from=fmt_from, pandoc=pandoc, cwd=cwd)
        rewritten = apply_code_block_filter(document, language)
        LOG.debug(f"Rewrote {rewritten} annotated {language} code block(s)")
        render_pandoc_json(document, output, fmt_to=fmt_to, pandoc=pandoc, cwd=cwd)
    except subprocess.CalledProcessError as e:
        LOG.error(
            "Failed to convert: %s (%s)\n%s", source, e, _decode_stderr(e.stderr)
        )
        raise
    except Exception as e:
        LOG.error("Failed to convert: %s (%s)", source, e)
        raise

    return rewritten


def read_changelog(
    changelog_command: str | None = CHANGELOG_COMMAND,
    changelog_file: Path | None = Path(CHANGELOG_FILE),
    cwd: Path | None = None,
) -> bytes | None:
    """Get the changelog to append to the README.

    The changelog command wins when it is installed, the static changelog
    file is only read otherwise. Missing both is not an error. The content
    is returned as raw bytes so it is appended exactly as produced.

    Raises:
        subprocess.CalledProcessError: If the changelog command fails
    """
    if changelog_command and shutil.which(changelog_command):
        LOG.debug(f"Generating changelog with {changelog_command}")
        try:
            result = subprocess.run(
                [changelog_command],
                check=True,
                capture_output=True,
                cwd=str(cwd) if cwd else None,
            )
        except subprocess.CalledProcessError as e:
            LOG.error(
                "Failed to generate changelog with %s (%s)\n%s",
                changelog_command,
                e,
                _decode_stderr(e.stderr),
            )
            raise
        return result.stdout

    if changelog_file and changelog_file.is_file():
        LOG.debug(f"Appending static changelog {changelog_file}")
        return changelog_file.read_bytes()

    return None


def append_changelog(candidate: Path, changelog: bytes) -> None:
    """Append the changelog to the candidate, separated by two newlines."""
    with open(candidate, "ab") as f:
        f.write(b"\n\n")
        f.write(changelog)


def _default_file_mode() -> int:
    # os.umask can only be read by setting it
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def publish(candidate: Path, target: Path) -> Outcome:
    """Replace ``target`` with ``candidate`` if their contents differ.

    The candidate is consumed either way: it is removed when identical to
    the target, and renamed over it otherwise.
    """
    if target.exists() and filecmp.cmp(target, candidate, shallow=False):
        LOG.info(f"No changes in {target.name}")
        candidate.unlink()
        return Outcome.UNCHANGED

    LOG.info(f"Updating {target.name}")
    if target.exists():
        mode = stat.S_IMODE(target.stat().st_mode)
    else:
        mode = _default_file_mode()
    candidate.chmod(mode)
    target.parent.mkdir(parents=True, exist_ok=True)
    os.replace(candidate, target)
    return Outcome.UPDATED


def generate_readme(
    directory: Path = Path("."),
    source: Path = Path(SOURCE_FILE),
    target: Path = Path(TARGET_FILE),
    changelog_file: Path | None = Path(CHANGELOG_FILE),
    changelog_command: str | None = CHANGELOG_COMMAND,
    language: str = CODE_LANGUAGE,
    fmt_from: str = "org",
    fmt_to: str = "commonmark",
    pandoc: str = "pandoc",
) -> Outcome:
    """Regenerate ``target`` from ``source`` if the source exists.

    Args:
        directory: Project directory, relative paths are resolved against it
        source: Org document to convert
        target: Published markdown file
        changelog_file: Static changelog, None to never append it
        changelog_command: Changelog generator, None to never run one
        language: Code block language whose annotations are rewritten
        fmt_from: pandoc reader
        fmt_to: pandoc writer
        pandoc: pandoc executable

    Returns:
        SKIPPED when there is no source, UNCHANGED or UPDATED otherwise

    Raises:
        DependencyError: If pandoc is missing or too old
        subprocess.CalledProcessError: If pandoc or the changelog command fails
    """
    directory = directory.absolute()
    source = directory / source
    target = directory / target
    if changelog_file is not None:
        changelog_file = directory / changelog_file

    if not source.is_file():
        LOG.debug(f"{source} not found. Skipping ...")
        return Outcome.SKIPPED

    check_pandoc(pandoc)

    # The target directory is only created on publish, until then the
    # candidate lives in its closest existing ancestor
    candidate_dir = target.parent
    while not candidate_dir.is_dir():
        candidate_dir = candidate_dir.parent
    candidate_temp = tempfile.NamedTemporaryFile(
        dir=str(candidate_dir),
        prefix=f".{target.name}.",
        suffix=".tmp",
        delete=False,
    )
    candidate_temp.close()
    candidate = Path(candidate_temp.name)

    try:
        convert_document(
            source,
            candidate,
            language=language,
            fmt_from=fmt_from,
            fmt_to=fmt_to,
            pandoc=pandoc,
            cwd=directory,
        )

        changelog = read_changelog(changelog_command, changelog_file, cwd=directory)
        if changelog is not None:
            append_changelog(candidate, changelog)

        return publish(candidate, target)

    finally:
        # Clean up the candidate unless it was published
        if candidate.exists():
            candidate.unlink()


def _decode_stderr(stderr) -> str:
    if stderr is None:
        return ""
    if isinstance(stderr, bytes):
        return stderr.decode("utf-8", errors="replace")
    return stderr


def main(argv: list[str] | None = None) -> int:
    parser = get_argument_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        outcome = generate_readme(
            directory=args.directory,
            source=args.source,
            target=args.target,
            changelog_file=None if args.no_changelog else args.changelog_file,
            changelog_command=None if args.no_changelog else args.changelog_command,
            language=args.language,
            fmt_from=args.fmt_from,
            fmt_to=args.fmt_to,
            pandoc=args.pandoc,
        )
    except Exception as e:
        LOG.error("Failed to generate %s: %s", args.target, e)
        return 1

    LOG.debug(f"README generation finished: {outcome.value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
