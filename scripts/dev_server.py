"""
开发模式：监控 databoard/ 与 config/ 下的文件变更，自动重启 DataBoard 后端。
用法: python scripts/dev_server.py [port]
"""

import os
import signal
import subprocess
import sys
import time

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

WATCH_DIRS = [
    os.path.join(PROJECT_ROOT, "databoard"),
    os.path.join(PROJECT_ROOT, "config"),
]
# 根目录只关心入口文件，避免 data/ 写入触发重启
ROOT_FILES = {os.path.join(PROJECT_ROOT, "main.py")}

WATCH_EXTENSIONS = {".py", ".yaml", ".yml"}

COOLDOWN = 1.5


class BackendProcess:
    """管理后端子进程的生命周期。"""

    def __init__(self, port: int):
        self.port = port
        self.process: subprocess.Popen | None = None

    def start(self):
        print(f"\n🚀 启动 DataBoard 后端 (port={self.port})...")
        env = os.environ.copy()
        env["PYTHONPATH"] = PROJECT_ROOT
        env.setdefault("DATABOARD_ROOT", PROJECT_ROOT)
        self.process = subprocess.Popen(
            [sys.executable, "main.py", str(self.port)],
            cwd=PROJECT_ROOT,
            env=env,
        )
        print(f"✅ 后端已启动 (PID: {self.process.pid})")

    def stop(self):
        if self.process is None or self.process.poll() is not None:
            return
        print(f"🛑 停止后端 (PID: {self.process.pid})...")
        # SIGTERM 让 uvicorn 执行 lifespan 关闭逻辑
        self.process.send_signal(signal.SIGTERM)
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            print("⚠️  强制终止...")
            self.process.kill()
            self.process.wait()

    def restart(self):
        self.stop()
        self.start()


class HotReloadHandler(FileSystemEventHandler):
    def __init__(self, backend: BackendProcess):
        self.backend = backend
        self._last_trigger = 0.0

    def _should_trigger(self, path: str) -> bool:
        if "__pycache__" in path:
            return False
        if os.path.dirname(path) == PROJECT_ROOT:
            return path in ROOT_FILES
        return os.path.splitext(path)[1] in WATCH_EXTENSIONS

    def on_modified(self, event):
        if event.is_directory or not self._should_trigger(event.src_path):
            return

        now = time.time()
        if now - self._last_trigger < COOLDOWN:
            return
        self._last_trigger = now

        print(f"\n🔄 检测到变更: {os.path.relpath(event.src_path, PROJECT_ROOT)}")
        self.backend.restart()

    def on_created(self, event):
        self.on_modified(event)


def main():
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 5000

    backend = BackendProcess(port)
    backend.start()

    handler = HotReloadHandler(backend)
    observer = Observer()
    for watch_dir in WATCH_DIRS:
        if os.path.isdir(watch_dir):
            observer.schedule(handler, watch_dir, recursive=True)
            print(f"👁️  监控目录: {os.path.relpath(watch_dir, PROJECT_ROOT)}/")
    observer.schedule(handler, PROJECT_ROOT, recursive=False)

    observer.start()
    print(f"\n🔥 开发模式已启动，后端地址: http://localhost:{port}  (Ctrl+C 退出)\n")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n👋 正在退出...")
        observer.stop()
        backend.stop()

    observer.join()


if __name__ == "__main__":
    main()
