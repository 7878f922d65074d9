"""
Built-in handlers that patch pipeline artifacts (scripts, Dockerfile, workflow,
package.json).
"""

import json
import logging
import re
from typing import Optional

from autoheal.handlers.base import ArtifactFixHandler, FixContext
from autoheal.models import FixResult, Issue

logger = logging.getLogger(__name__)

_NODE_MODULES_RE = re.compile(r"node_modules/((?:@[\w.-]+/)?[\w.-]+)")
_ES_MODULE_RE = re.compile(r"require\(\) of ES Module\s+['\"]?((?:@[\w.-]+/)?[\w.-]+)")


def module_from_excerpt(excerpt: str) -> Optional[str]:
    """Name of the ES module a require() error complains about."""
    match = _NODE_MODULES_RE.search(excerpt)
    if match:
        return match.group(1)
    match = _ES_MODULE_RE.search(excerpt)
    if match:
        return match.group(1)
    return None


class EsmDynamicImportHandler(ArtifactFixHandler):
    """
    Turns a CommonJS script that require()s an ES-only module into an ES module.

    The require() of the failing module becomes a top-level dynamic import, the
    other top-level `const x = require('y')` declarations become static imports,
    and package.json gets `"type": "module"`. A script that still needs CommonJS
    afterwards (nested or unusual require calls, module.exports, __dirname) is
    left untouched and the fix fails.
    """

    handler_id = "esm-dynamic-import"

    _REQUIRE_DECL = re.compile(
        r"^const\s+(\{[^}]*\}|[A-Za-z_$][\w$]*)\s*=\s*require\(\s*(['\"])([^'\"]+)\2\s*\)[ \t]*;?[ \t]*$",
        re.MULTILINE,
    )
    _COMMONJS = re.compile(r"\brequire\s*[(.]|\bmodule\.exports\b|\bexports\.|\b__dirname\b|\b__filename\b")

    def __init__(self, ctx: FixContext):
        super().__init__(ctx)
        self.commit_changes = ctx.config.commit_fixes

    def target_paths(self, issue: Issue) -> list[str]:
        return list(self.ctx.config.esm_script_paths)

    @staticmethod
    def _static_import(binding: str, quote: str, module: str) -> str:
        if not binding.startswith("{"):
            return f"import {binding} from {quote}{module}{quote};"
        names = []
        for part in binding.strip("{} ").split(","):
            part = part.strip()
            if not part:
                continue
            if ":" in part:
                source, local = (p.strip() for p in part.split(":", 1))
                part = f"{source} as {local}"
            names.append(part)
        return f"import {{ {', '.join(names)} }} from {quote}{module}{quote};"

    def apply(self, issue: Issue, path: str, text: str) -> Optional[str]:
        module = module_from_excerpt(issue.raw_excerpt)
        if module is None:
            return None
        if not any(m.group(3) == module for m in self._REQUIRE_DECL.finditer(text)):
            return None

        def convert(match: re.Match) -> str:
            binding, quote, name = match.groups()
            if name == module:
                return f"const {binding} = await import({quote}{name}{quote});"
            return self._static_import(binding, quote, name)

        patched = self._REQUIRE_DECL.sub(convert, text)
        leftover = self._COMMONJS.search(patched)
        if leftover:
            logger.warning(
                f"{self.handler_id}: {path} still needs CommonJS ({leftover.group(0)!r}), not converting"
            )
            return None
        return patched

    def is_fixed(self, issue: Issue, path: str, text: str) -> bool:
        module = module_from_excerpt(issue.raw_excerpt)
        if module is None:
            return False
        quoted = r"(['\"])" + re.escape(module) + r"\1"
        imported = re.compile(r"\bimport\(\s*" + quoted + r"\s*\)|\bfrom\s+" + quoted)
        return bool(imported.search(text)) and not self._COMMONJS.search(text)

    async def _read_manifest(self, path: str) -> Optional[dict]:
        """package.json as a dict; empty when absent, None when unparseable."""
        store = self.ctx.artifacts
        if not await store.exists(path):
            return {}
        try:
            manifest = json.loads(await store.read(path))
        except json.JSONDecodeError:
            return None
        return manifest if isinstance(manifest, dict) else None

    async def handle(self, issue: Issue) -> FixResult:
        if module_from_excerpt(issue.raw_excerpt) is None:
            return self.fail(issue, "Could not determine the ES module from the log excerpt")

        manifest_path = self.ctx.config.package_json_path
        manifest = await self._read_manifest(manifest_path)
        if manifest is None:
            return self.fail(issue, f"{manifest_path} is not a valid package manifest")

        result = await super().handle(issue)
        if not result.success or manifest.get("type") == "module":
            return result

        manifest["type"] = "module"
        await self.ctx.artifacts.write(manifest_path, json.dumps(manifest, indent=2) + "\n")
        return self.ok(
            issue,
            f"{result.message}; marked {manifest_path} as an ES module package",
            requires_restart=self.requires_restart,
            changed_paths=result.changed_paths + (manifest_path,),
        )


class ChromedriverSymlinkHandler(ArtifactFixHandler):
    """Makes the Dockerfile's chromedriver symlink step tolerate an existing link."""

    handler_id = "chromedriver-symlink"

    _BROKEN = re.compile(r"\bln -s(?= )(?=[^\n]*chromedriver)")
    _FIXED = re.compile(r"\bln -sf [^\n]*chromedriver|rm -f [^\n]*chromedriver")

    def __init__(self, ctx: FixContext):
        super().__init__(ctx)
        self.commit_changes = ctx.config.commit_fixes

    def target_paths(self, issue: Issue) -> list[str]:
        return [self.ctx.config.dockerfile_path]

    def apply(self, issue: Issue, path: str, text: str) -> Optional[str]:
        if not self._BROKEN.search(text):
            return None
        return self._BROKEN.sub("ln -sf", text)

    def is_fixed(self, issue: Issue, path: str, text: str) -> bool:
        return bool(self._FIXED.search(text)) and not self._BROKEN.search(text)


class NodeVersionBumpHandler(ArtifactFixHandler):
    """Moves the workflow and Docker base image from Node 18 to the target version."""

    handler_id = "node-version-bump"

    _WORKFLOW_OLD = re.compile(r"^(\s*node-version:\s*)['\"]?18(?:\.[\dx]+)*['\"]?[ \t]*$", re.MULTILINE)
    _DOCKER_OLD = re.compile(r"^(FROM\s+node:)18(\S*)", re.MULTILINE)

    def __init__(self, ctx: FixContext):
        super().__init__(ctx)
        self.commit_changes = ctx.config.commit_fixes
        self.target = ctx.config.node_target_version

    def target_paths(self, issue: Issue) -> list[str]:
        return [self.ctx.config.workflow_path, self.ctx.config.dockerfile_path]

    def _is_dockerfile(self, path: str) -> bool:
        return path == self.ctx.config.dockerfile_path

    def apply(self, issue: Issue, path: str, text: str) -> Optional[str]:
        if self._is_dockerfile(path):
            if not self._DOCKER_OLD.search(text):
                return None
            return self._DOCKER_OLD.sub(lambda m: f"{m.group(1)}{self.target}{m.group(2)}", text)

        if not self._WORKFLOW_OLD.search(text):
            return None
        return self._WORKFLOW_OLD.sub(lambda m: f"{m.group(1)}{self.target}", text)

    def is_fixed(self, issue: Issue, path: str, text: str) -> bool:
        target = re.escape(self.target)
        if self._is_dockerfile(path):
            fixed = re.compile(rf"^FROM\s+node:{target}\b", re.MULTILINE)
            return bool(fixed.search(text)) and not self._DOCKER_OLD.search(text)
        fixed = re.compile(rf"^\s*node-version:\s*['\"]?{target}\b", re.MULTILINE)
        return bool(fixed.search(text)) and not self._WORKFLOW_OLD.search(text)


class EnsureDependencyHandler(ArtifactFixHandler):
    """
    Declares missing npm packages in package.json.

    Nothing is installed here; the pipeline rerun that follows installs them.
    """

    def __init__(
        self,
        ctx: FixContext,
        handler_id: str,
        packages: dict[str, str],
        section: str = "dependencies",
    ):
        super().__init__(ctx)
        self.handler_id = handler_id
        self.packages = packages
        self.section = section
        self.commit_changes = ctx.config.commit_fixes

    def target_paths(self, issue: Issue) -> list[str]:
        return [self.ctx.config.package_json_path]

    @staticmethod
    def _declared(manifest: dict) -> set[str]:
        names: set[str] = set()
        for section in ("dependencies", "devDependencies"):
            names.update((manifest.get(section) or {}).keys())
        return names

    def _parse(self, path: str, text: str) -> Optional[dict]:
        try:
            manifest = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"{self.handler_id}: {path} is not valid JSON: {e}")
            return None
        return manifest if isinstance(manifest, dict) else None

    def apply(self, issue: Issue, path: str, text: str) -> Optional[str]:
        manifest = self._parse(path, text)
        if manifest is None:
            return None
        missing = {n: v for n, v in self.packages.items() if n not in self._declared(manifest)}
        if not missing:
            return None

        section = dict(manifest.get(self.section) or {})
        section.update(missing)
        manifest[self.section] = dict(sorted(section.items()))
        return json.dumps(manifest, indent=2) + "\n"

    def is_fixed(self, issue: Issue, path: str, text: str) -> bool:
        manifest = self._parse(path, text)
        if manifest is None:
            return False
        return set(self.packages) <= self._declared(manifest)


def cucumber_handler(ctx: FixContext) -> EnsureDependencyHandler:
    return EnsureDependencyHandler(
        ctx,
        handler_id="ensure-cucumber",
        packages={"@cucumber/cucumber": "^10.0.0", "cucumber-html-reporter": "^6.0.0"},
        section="devDependencies",
    )


def webdriver_handler(ctx: FixContext) -> EnsureDependencyHandler:
    return EnsureDependencyHandler(
        ctx,
        handler_id="ensure-webdriver",
        packages={"selenium-webdriver": "^4.15.0", "chromedriver": "^119.0.1"},
    )
