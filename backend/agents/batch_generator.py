"""Batch generation: convert every page of a design into a published project.

Each design page is rendered, converted to a React component by the model
(with a fixed number of attempts per page) and placed in a Vite or Next.js
scaffold that is pushed to an existing repository. Failed pages are
skipped; the run fails only when no page converts.
"""

import base64
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Literal

import structlog

from agents.prompts import COMPONENT_CONVERSION_PROMPT, build_conversion_request
from agents.utils import LLMClient
from config import settings
from errors import RelayError, UpstreamServiceError, ValidationError
from events.bus import EventBus
from events.types import EventType
from integrations.base import ArtifactRepository, DesignPage, DesignSource, RepoFile
from integrations.figma import extract_file_key
from models.session import ImageBlock, parse_artifact_ref

logger = structlog.get_logger()

ProjectType = Literal["react-vite", "nextjs"]

_FENCE_RE = re.compile(r"```[a-zA-Z]*\n?([\s\S]*?)```")


def extract_code_block(text: str) -> str:
    """Return the first fenced block's body, or the whole text when unfenced."""
    text = (text or "").strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def component_name(page: DesignPage, taken: set[str]) -> str:
    """PascalCase-ish identifier for a page, unique within ``taken``."""
    base = re.sub(r"[^a-zA-Z0-9]", "", page.name)
    if not base or not base[0].isalpha():
        base = f"Component{re.sub(r'[^a-zA-Z0-9]', '', page.id) or len(taken)}"
    name = base[0].upper() + base[1:]
    candidate, suffix = name, 2
    while candidate in taken:
        candidate = f"{name}{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate


@dataclass
class BatchResult:
    run_id: str
    repo_name: str
    repo_url: str
    converted_pages: list[str] = field(default_factory=list)
    failed_pages: list[str] = field(default_factory=list)
    total_files: int = 0


class BatchGenerator:
    """Design-to-project conversion pipeline."""

    def __init__(
        self,
        event_bus: EventBus,
        llm_client: LLMClient,
        design_source: DesignSource,
        artifact_repo: ArtifactRepository,
        max_attempts: int | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.llm_client = llm_client
        self.design_source = design_source
        self.artifact_repo = artifact_repo
        self.max_attempts = max_attempts or settings.batch_max_attempts

    async def generate(
        self,
        repo_url: str,
        design_ref: str,
        project_type: ProjectType = "nextjs",
    ) -> BatchResult:
        """Convert all pages of ``design_ref`` and publish them to ``repo_url``.

        Raises:
            ValidationError: For an unusable repository or design reference,
                or a design without pages.
            UpstreamServiceError: If no page converts or the upload fails.
        """
        full_name = parse_artifact_ref(repo_url)
        if full_name is None:
            raise ValidationError(f"Not a repository URL: {repo_url}")
        if extract_file_key(design_ref) is None:
            raise ValidationError(f"Not a design file URL: {design_ref}")

        pages = await self.design_source.list_pages(design_ref)
        if not pages:
            raise ValidationError("The design file has no pages")

        run_id = f"batch_{uuid.uuid4().hex[:12]}"
        logger.info("batch_generation_started", run_id=run_id, repo=full_name, pages=len(pages))

        components: list[tuple[str, str]] = []
        failed: list[str] = []
        taken: set[str] = set()
        for page in pages:
            code = await self._convert_page(run_id, design_ref, page)
            if code is None:
                failed.append(page.name)
                continue
            components.append((component_name(page, taken), code))

        if not components:
            raise UpstreamServiceError(
                f"None of the {len(pages)} design pages could be converted", service="model"
            )

        files = build_project_files(full_name.split("/", 1)[1], project_type, components)
        await self.artifact_repo.put_files(full_name, files)

        result = BatchResult(
            run_id=run_id,
            repo_name=full_name,
            repo_url=f"https://github.com/{full_name}",
            converted_pages=[name for name, _ in components],
            failed_pages=failed,
            total_files=len(files),
        )
        logger.info(
            "batch_generation_complete",
            run_id=run_id,
            repo=full_name,
            converted=len(result.converted_pages),
            failed=len(failed),
            total_files=result.total_files,
        )
        return result

    async def _convert_page(self, run_id: str, design_ref: str, page: DesignPage) -> str | None:
        last_error = "no attempts made"
        for attempt in range(1, self.max_attempts + 1):
            try:
                image = await self.design_source.page_image(design_ref, page.id)
                if image is None:
                    last_error = "page render unavailable"
                    continue
                text = await self.llm_client.generate_vision(
                    COMPONENT_CONVERSION_PROMPT,
                    build_conversion_request(page.name, attempt),
                    [ImageBlock(data=base64.b64encode(image).decode("ascii"))],
                    model=settings.worker_model,
                    max_tokens=settings.worker_max_tokens,
                    session_id=run_id,
                )
            except RelayError as e:
                last_error = e.message
                logger.warning(
                    "batch_page_attempt_failed",
                    run_id=run_id,
                    page=page.name,
                    attempt=attempt,
                    error=e.message,
                )
                continue

            code = extract_code_block(text)
            if "export default" in code:
                await self.event_bus.emit(
                    EventType.BATCH_PAGE_GENERATED,
                    run_id,
                    source="batch",
                    page=page.name,
                    attempt=attempt,
                )
                return code
            last_error = "response contained no component"

        await self.event_bus.emit(
            EventType.BATCH_PAGE_FAILED,
            run_id,
            source="batch",
            page=page.name,
            attempts=self.max_attempts,
            error=last_error,
        )
        logger.warning("batch_page_failed", run_id=run_id, page=page.name, error=last_error)
        return None


# =============================================================================
# Project scaffold
# =============================================================================


def build_project_files(
    project_name: str,
    project_type: ProjectType,
    components: list[tuple[str, str]],
) -> list[RepoFile]:
    """Component files plus the scaffold that renders them in order."""
    is_vite = project_type == "react-vite"
    component_dir = "src/components" if is_vite else "components"
    files = [RepoFile(f"{component_dir}/{name}.tsx", code) for name, code in components]
    names = [name for name, _ in components]
    usages = "\n      ".join(f"<{name} />" for name in names)

    files.append(RepoFile("package.json", json.dumps(_package_json(project_name, is_vite), indent=2)))
    files.append(RepoFile("tsconfig.json", json.dumps(_tsconfig(is_vite), indent=2)))
    files.append(
        RepoFile(
            "README.md",
            f"# {project_name}\n\nGenerated from a design file.\n\n"
            "## Getting started\n\n```bash\nnpm install\nnpm run dev\n```\n",
        )
    )
    files.append(
        RepoFile(".gitignore", f"node_modules\n{'dist' if is_vite else '.next'}\n.env.local\n.env.*.local\n")
    )

    if is_vite:
        imports = "\n".join(f"import {n} from './components/{n}.tsx'" for n in names)
        files.extend([
            RepoFile(
                "src/main.tsx",
                "import React from 'react'\n"
                "import ReactDOM from 'react-dom/client'\n"
                "import App from './App.tsx'\n"
                "import './index.css'\n\n"
                "ReactDOM.createRoot(document.getElementById('root')!).render(\n"
                "  <React.StrictMode>\n    <App />\n  </React.StrictMode>,\n)\n",
            ),
            RepoFile(
                "src/App.tsx",
                f"{imports}\n\nfunction App() {{\n  return (\n    <div className=\"App\">\n"
                f"      {usages}\n    </div>\n  )\n}}\n\nexport default App\n",
            ),
            RepoFile(
                "src/index.css",
                "* {\n  margin: 0;\n  padding: 0;\n  box-sizing: border-box;\n}\n",
            ),
            RepoFile(
                "index.html",
                "<!doctype html>\n<html lang=\"en\">\n  <head>\n    <meta charset=\"UTF-8\" />\n"
                "    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1.0\" />\n"
                f"    <title>{project_name}</title>\n  </head>\n  <body>\n"
                "    <div id=\"root\"></div>\n"
                "    <script type=\"module\" src=\"/src/main.tsx\"></script>\n"
                "  </body>\n</html>\n",
            ),
            RepoFile(
                "vite.config.ts",
                "import { defineConfig } from 'vite'\nimport react from '@vitejs/plugin-react'\n\n"
                "export default defineConfig({\n  plugins: [react()],\n})\n",
            ),
        ])
    else:
        imports = "\n".join(f"import {n} from '@/components/{n}'" for n in names)
        files.extend([
            RepoFile(
                "app/page.tsx",
                f"{imports}\n\nexport default function Home() {{\n  return (\n    <main>\n"
                f"      {usages}\n    </main>\n  )\n}}\n",
            ),
            RepoFile(
                "app/layout.tsx",
                "import type { Metadata } from 'next'\n\n"
                f"export const metadata: Metadata = {{\n  title: '{project_name}',\n"
                "  description: 'Generated from a design file',\n}\n\n"
                "export default function RootLayout({\n  children,\n}: {\n"
                "  children: React.ReactNode\n}) {\n  return (\n    <html lang=\"en\">\n"
                "      <body>{children}</body>\n    </html>\n  )\n}\n",
            ),
            RepoFile(
                "next.config.js",
                "/** @type {import('next').NextConfig} */\nconst nextConfig = {}\n\n"
                "module.exports = nextConfig\n",
            ),
        ])
    return files


def _package_json(project_name: str, is_vite: bool) -> dict[str, object]:
    package: dict[str, object] = {"name": project_name, "private": True, "version": "0.0.0"}
    if is_vite:
        package.update({
            "type": "module",
            "scripts": {"dev": "vite", "build": "tsc && vite build", "preview": "vite preview"},
            "dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0"},
            "devDependencies": {
                "@types/react": "^18.2.66",
                "@types/react-dom": "^18.2.22",
                "@vitejs/plugin-react": "^4.2.1",
                "typescript": "^5.2.2",
                "vite": "^5.2.0",
            },
        })
    else:
        package.update({
            "scripts": {"dev": "next dev", "build": "next build", "start": "next start"},
            "dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0", "next": "^14.0.0"},
            "devDependencies": {
                "@types/node": "^20.0.0",
                "@types/react": "^18.2.0",
                "@types/react-dom": "^18.2.0",
                "typescript": "^5.0.0",
            },
        })
    return package


def _tsconfig(is_vite: bool) -> dict[str, object]:
    options: dict[str, object] = {
        "target": "ES2020",
        "lib": ["ES2020", "DOM", "DOM.Iterable"],
        "jsx": "react-jsx",
        "strict": True,
        "skipLibCheck": True,
    }
    if is_vite:
        options.update({
            "module": "ESNext",
            "moduleResolution": "bundler",
            "allowImportingTsExtensions": True,
            "resolveJsonModule": True,
            "isolatedModules": True,
            "noEmit": True,
        })
        return {"compilerOptions": options, "include": ["src"]}
    options.update({
        "module": "esnext",
        "moduleResolution": "node",
        "incremental": True,
        "plugins": [{"name": "next"}],
        "paths": {"@/*": ["./*"]},
    })
    return {
        "compilerOptions": options,
        "include": ["next-env.d.ts", "**/*.ts", "**/*.tsx"],
        "exclude": ["node_modules"],
    }
