from __future__ import annotations

import base64
import json
from types import MappingProxyType
from typing import Mapping


DEV_PID_FILENAME = ".sandbox-dev.pid"
MANIFEST_EXTENSIONS = (".jsx", ".js", ".tsx", ".ts", ".css", ".json")
EXCLUDED_DIRS = ("node_modules", ".git", "dist", "build")
STRUCTURE_MAX_LINES = 50
STRUCTURE_MAX_FILES_PER_DIR = 20

INSTALL_STATUS_MARKER = "INSTALL_STATUS:"
STDERR_MARKER = "STDERR:"
ERESOLVE_MARKER = "ERESOLVE_ERROR:"


_PACKAGE_JSON = {
    "name": "sandbox-app",
    "version": "1.0.0",
    "type": "module",
    "scripts": {
        "dev": "vite --host",
        "build": "vite build",
        "preview": "vite preview",
    },
    "dependencies": {
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
    },
    "devDependencies": {
        "@vitejs/plugin-react": "^4.0.0",
        "vite": "^4.3.9",
        "tailwindcss": "^3.3.0",
        "postcss": "^8.4.31",
        "autoprefixer": "^10.4.16",
    },
}

_VITE_CONFIG = """import {{ defineConfig }} from 'vite'
import react from '@vitejs/plugin-react'

export default defineConfig({{
  plugins: [react()],
  server: {{
    host: '0.0.0.0',
    port: {port},
    strictPort: true,
    hmr: false,
    allowedHosts: ['.sandbox.local', 'localhost', '127.0.0.1']
  }}
}})
"""

_TAILWIND_CONFIG = """/** @type {import('tailwindcss').Config} */
export default {
  content: [
    "./index.html",
    "./src/**/*.{js,ts,jsx,tsx}",
  ],
  theme: {
    extend: {},
  },
  plugins: [],
}
"""

_POSTCSS_CONFIG = """export default {
  plugins: {
    tailwindcss: {},
    autoprefixer: {},
  },
}
"""

_INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>Sandbox App</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.jsx"></script>
  </body>
</html>
"""

_MAIN_JSX = """import React from 'react'
import ReactDOM from 'react-dom/client'
import App from './App.jsx'
import './index.css'

ReactDOM.createRoot(document.getElementById('root')).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>,
)
"""

_APP_JSX = """function App() {
  return (
    <div className="min-h-screen bg-gray-900 text-white flex items-center justify-center p-4">
      <div className="text-center max-w-2xl">
        <p className="text-lg text-gray-400">
          Sandbox Ready<br/>
          Start building your React app with Vite and Tailwind CSS!
        </p>
      </div>
    </div>
  )
}

export default App
"""

_INDEX_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

@layer base {
  :root {
    font-synthesis: none;
    text-rendering: optimizeLegibility;
    -webkit-font-smoothing: antialiased;
    -moz-osx-font-smoothing: grayscale;
  }

  * {
    margin: 0;
    padding: 0;
    box-sizing: border-box;
  }
}

body {
  font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Oxygen, Ubuntu, sans-serif;
  background-color: rgb(17 24 39);
}
"""


def build_project_skeleton(*, dev_port: int = 5173) -> Mapping[str, str]:
    """Return the starter project as ``relative path -> file content``."""
    files = {
        "package.json": json.dumps(_PACKAGE_JSON, indent=2) + "\n",
        "vite.config.js": _VITE_CONFIG.format(port=int(dev_port)),
        "tailwind.config.js": _TAILWIND_CONFIG,
        "postcss.config.js": _POSTCSS_CONFIG,
        "index.html": _INDEX_HTML,
        "src/main.jsx": _MAIN_JSX,
        "src/App.jsx": _APP_JSX,
        "src/index.css": _INDEX_CSS,
    }
    return MappingProxyType(files)


SKELETON_PATHS = tuple(build_project_skeleton().keys())


def dev_pid_path(app_dir: str) -> str:
    return f"{app_dir.rstrip('/')}/{DEV_PID_FILENAME}"


def encode_payload(payload: object) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


# Scripts below run inside the environment through `python3 -c`. Arguments are
# passed on argv; structured results are printed as a single JSON document.

WRITE_FILES_SCRIPT = r"""
import base64
import json
import os
import sys

app_dir = sys.argv[1]
files = json.loads(base64.b64decode(sys.argv[2]).decode("utf-8"))
written = []
for rel_path, content in files.items():
    full_path = os.path.join(app_dir, rel_path)
    os.makedirs(os.path.dirname(full_path), exist_ok=True)
    with open(full_path, "w", encoding="utf-8") as handle:
        handle.write(content)
    written.append(rel_path)
print(json.dumps({"success": True, "written": written}))
"""

ENUMERATE_FILES_SCRIPT = r"""
import json
import os
import sys
import traceback

app_dir = sys.argv[1]
max_bytes = int(sys.argv[2])
max_lines = int(sys.argv[3])
max_files_per_dir = int(sys.argv[4])
extensions = tuple(json.loads(sys.argv[5]))
excluded = set(json.loads(sys.argv[6]))


def collect_files():
    files = {}
    errors = []
    for root, dirs, names in os.walk(app_dir):
        dirs[:] = sorted(d for d in dirs if d not in excluded)
        for name in sorted(names):
            if not name.endswith(extensions):
                continue
            full_path = os.path.join(root, name)
            rel_path = os.path.relpath(full_path, app_dir)
            try:
                size = os.path.getsize(full_path)
                if size > max_bytes:
                    errors.append(f"File {rel_path} too large ({size} bytes), skipped")
                    continue
                with open(full_path, "r", encoding="utf-8") as handle:
                    files[rel_path] = {"content": handle.read(), "mtime": os.path.getmtime(full_path)}
            except Exception as exc:
                errors.append(f"Error reading {rel_path}: {exc}")
    return files, errors


def collect_structure():
    lines = []
    for root, dirs, names in os.walk(app_dir):
        dirs[:] = sorted(d for d in dirs if d not in excluded)
        rel_root = os.path.relpath(root, app_dir)
        level = 0 if rel_root == "." else rel_root.count(os.sep) + 1
        lines.append(f"{'  ' * level}{os.path.basename(root) or 'app'}/")
        if len(lines) >= max_lines:
            break
        for name in sorted(names)[:max_files_per_dir]:
            lines.append(f"{'  ' * (level + 1)}{name}")
        if len(lines) >= max_lines:
            break
    return lines[:max_lines]


try:
    files, errors = collect_files()
    result = {
        "success": True,
        "files": files,
        "structure": "\n".join(collect_structure()),
        "file_count": len(files),
        "errors": errors,
    }
except Exception as exc:
    result = {"success": False, "error": str(exc), "traceback": traceback.format_exc()}
print(json.dumps(result))
"""

READ_DEPENDENCIES_SCRIPT = r"""
import json
import os
import sys

try:
    with open(os.path.join(sys.argv[1], "package.json"), "r", encoding="utf-8") as handle:
        package_json = json.load(handle)
    names = list(package_json.get("dependencies", {}) or {})
    names += list(package_json.get("devDependencies", {}) or {})
    print(json.dumps({"success": True, "dependencies": names}))
except Exception as exc:
    print(json.dumps({"success": False, "error": str(exc)}))
"""

STOP_DEV_SERVER_SCRIPT = r"""
import os
import signal
import sys

try:
    with open(sys.argv[1], "r") as handle:
        pid = int(handle.read().strip())
    os.killpg(pid, signal.SIGTERM)
    print("Stopped existing dev server")
except Exception:
    print("No existing dev server found")
"""

START_DEV_SERVER_SCRIPT = r"""
import os
import subprocess
import sys
import time

app_dir = sys.argv[1]
pid_file = sys.argv[2]
settle_seconds = float(sys.argv[3])
touch_paths = sys.argv[4:]

subprocess.run(["pkill", "-f", "vite"], capture_output=True)
time.sleep(1)

env = os.environ.copy()
env["FORCE_COLOR"] = "0"
process = subprocess.Popen(
    ["npm", "run", "dev"],
    cwd=app_dir,
    stdout=subprocess.DEVNULL,
    stderr=subprocess.DEVNULL,
    env=env,
    start_new_session=True,
)
with open(pid_file, "w") as handle:
    handle.write(str(process.pid))
print(f"Dev server started with PID: {process.pid}")

if settle_seconds > 0:
    time.sleep(settle_seconds)
for rel_path in touch_paths:
    full_path = os.path.join(app_dir, rel_path)
    if os.path.exists(full_path):
        os.utime(full_path, None)
"""

TOUCH_FILES_SCRIPT = r"""
import os
import sys

app_dir = sys.argv[1]
for rel_path in sys.argv[2:]:
    full_path = os.path.join(app_dir, rel_path)
    if os.path.exists(full_path):
        os.utime(full_path, None)
        print(f"Touched {rel_path}")
"""

INSTALL_PACKAGES_SCRIPT = r"""
import os
import signal
import subprocess
import sys
import threading

app_dir = sys.argv[1]
timeout_seconds = float(sys.argv[2])
packages = sys.argv[3:]
cmd = ["npm", "install", "--legacy-peer-deps"] + packages
print(f"Running command: {' '.join(cmd)}", flush=True)

process = subprocess.Popen(
    cmd,
    cwd=app_dir,
    stdout=subprocess.PIPE,
    stderr=subprocess.PIPE,
    text=True,
    start_new_session=True,
)
timed_out = threading.Event()


def kill_process_group():
    timed_out.set()
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


stderr_lines = []
reader = threading.Thread(target=lambda: stderr_lines.extend(process.stderr), daemon=True)
reader.start()
timer = threading.Timer(timeout_seconds, kill_process_group)
timer.start()
for line in process.stdout:
    line = line.rstrip()
    if line:
        print(line, flush=True)
rc = process.wait()
timer.cancel()
reader.join(timeout=5)

if timed_out.is_set():
    print(f"INSTALL_STATUS:TIMEOUT:npm install exceeded {timeout_seconds:g} second timeout", flush=True)
    sys.exit(0)

stderr_text = "".join(stderr_lines)
for line in stderr_text.splitlines():
    line = line.strip()
    if line.startswith("npm WARN"):
        print(line)
    elif line:
        print(f"STDERR: {line}")
if "ERESOLVE" in stderr_text:
    print("ERESOLVE_ERROR: Dependency conflict detected - using --legacy-peer-deps flag")
print(f"INSTALL_STATUS:{'SUCCESS' if rc == 0 else 'ERROR'}:{rc}", flush=True)
"""
