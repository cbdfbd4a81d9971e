"""Starter files for new projects: a one-page spec and a Vite + Convex app."""

from specpilot.config import DeploySettings


_SPEC_INDEX = """# Overview

Describe the application here: who it is for and what it should do.

# Features

- (none yet)
"""

_PACKAGE_JSON = """{
  "name": "app",
  "private": true,
  "type": "module",
  "scripts": {
    "dev": "npm-run-all --parallel dev:frontend dev:backend",
    "dev:frontend": "vite --host 0.0.0.0 --port 5173",
    "dev:backend": "convex dev",
    "lint": "tsc -p . --noEmit && eslint ."
  },
  "dependencies": {
    "convex": "^1.24.0",
    "react": "^19.0.0",
    "react-dom": "^19.0.0"
  },
  "devDependencies": {
    "@eslint/js": "^9.21.0",
    "@types/react": "^19.0.10",
    "@types/react-dom": "^19.0.4",
    "@vitejs/plugin-react": "^4.3.4",
    "eslint": "^9.21.0",
    "npm-run-all": "^4.1.5",
    "typescript": "~5.7.2",
    "typescript-eslint": "^8.24.1",
    "vite": "^6.2.0"
  }
}
"""

_TSCONFIG = """{
  "compilerOptions": {
    "target": "ES2020",
    "module": "ESNext",
    "moduleResolution": "Bundler",
    "jsx": "react-jsx",
    "strict": true,
    "skipLibCheck": true,
    "noEmit": true
  },
  "include": ["src", "convex"]
}
"""

_ESLINT_CONFIG = """import js from "@eslint/js";
import tseslint from "typescript-eslint";

export default tseslint.config(
  { ignores: ["dist", "convex/_generated"] },
  js.configs.recommended,
  ...tseslint.configs.recommended,
);
"""

_VITE_CONFIG = """import { defineConfig } from "vite";
import react from "@vitejs/plugin-react";

export default defineConfig({
  plugins: [react()],
  server: { allowedHosts: true },
});
"""

_INDEX_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.tsx"></script>
  </body>
</html>
"""

_MAIN_TSX = """import { StrictMode } from "react";
import { createRoot } from "react-dom/client";
import { ConvexProvider, ConvexReactClient } from "convex/react";
import App from "./App";

const convex = new ConvexReactClient(import.meta.env.VITE_CONVEX_URL as string);

createRoot(document.getElementById("root")!).render(
  <StrictMode>
    <ConvexProvider client={convex}>
      <App />
    </ConvexProvider>
  </StrictMode>,
);
"""

_APP_TSX = """export default function App() {
  return <main>Your app will appear here once the spec is written.</main>;
}
"""

_CONVEX_SCHEMA = """import { defineSchema } from "convex/server";

export default defineSchema({});
"""


def default_template(settings: DeploySettings | None = None) -> dict[str, str]:
    settings = settings or DeploySettings()
    return {
        "spec/index.md": _SPEC_INDEX,
        "code/package.json": _PACKAGE_JSON,
        "code/tsconfig.json": _TSCONFIG,
        "code/eslint.config.js": _ESLINT_CONFIG,
        "code/vite.config.ts": _VITE_CONFIG,
        "code/index.html": _INDEX_HTML,
        "code/.env.local": f"VITE_CONVEX_URL={settings.backend_url_placeholder}\n",
        "code/src/main.tsx": _MAIN_TSX,
        "code/src/App.tsx": _APP_TSX,
        "code/convex/schema.ts": _CONVEX_SCHEMA,
    }
