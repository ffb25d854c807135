#!/usr/bin/env python3
"""
FastAPI web server for lzx_auto.

Provides a web interface to start, monitor, cancel and reset LZX compression runs.
"""

import os
import sys
import threading
import time
import logging
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

# Add parent directory to path to import lzx_auto
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from lzx_auto import CompressionSession, CacheCorruptError, ChangeCache, default_cache_file


class LogCaptureHandler(logging.Handler):
    """Logging handler that keeps the most recent log lines in memory."""

    def __init__(self, log_store: List[str], store_lock: threading.Lock, max_lines: int = 2000):
        super().__init__()
        self.log_store = log_store
        self.store_lock = store_lock
        self.max_lines = max_lines
        self.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s',
                                            datefmt='%Y-%m-%d %H:%M:%S'))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self.store_lock:
            self.log_store.append(msg)
            # Keep only last max_lines to prevent memory issues
            if len(self.log_store) > self.max_lines:
                del self.log_store[:len(self.log_store) - self.max_lines]


app = FastAPI(title="LZX Compression Server", version="1.0.0")


class RunState:
    """Thread-safe state of the current (or last) compression run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._logs: List[str] = []
        self._logs_lock = threading.Lock()
        self.reset()

    def reset(self):
        """Reset state for a new run."""
        with self._lock:
            self._status = "idle"
            self._session: Optional[CompressionSession] = None
            self._folder: Optional[str] = None
            self._start_time: Optional[float] = None
            self._final_elapsed: Optional[float] = None
            self._error_message: Optional[str] = None
            self._summary: Optional[Dict] = None
        with self._logs_lock:
            self._logs.clear()

    def set_running(self, session: CompressionSession, folder: str):
        with self._lock:
            self._status = "running"
            self._session = session
            self._folder = folder
            self._start_time = time.time()

    def request_stop(self) -> bool:
        """Ask the running session to cancel. Returns False if nothing is running."""
        with self._lock:
            if self._status != "running" or self._session is None:
                return False
            self._status = "stopping"
            session = self._session
        session.cancel()
        return True

    def set_finished(self, summary: Dict):
        with self._lock:
            self._status = "stopped" if summary.get("cancelled") else "completed"
            self._summary = summary
            if self._start_time:
                self._final_elapsed = time.time() - self._start_time

    def set_error(self, error_message: str):
        with self._lock:
            self._status = "error"
            self._error_message = error_message
            if self._start_time:
                self._final_elapsed = time.time() - self._start_time

    def is_active(self) -> bool:
        with self._lock:
            return self._status in ("running", "stopping")

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            status: Dict[str, Any] = {
                'status': self._status,
                'folder': self._folder,
                'error_message': self._error_message,
            }
            session = self._session
            if self._start_time:
                if self._final_elapsed is not None:
                    status['elapsed_seconds'] = self._final_elapsed
                else:
                    status['elapsed_seconds'] = time.time() - self._start_time
            if self._summary:
                status['summary'] = self._summary

        if session is not None:
            status['stats'] = session.stats.snapshot()
            status['in_flight'] = session.queue.in_flight if session.queue else 0
            status['cache_file'] = session.cache_file
        return status

    def get_logs(self, since: Optional[int] = None, max_display_lines: int = 1000) -> List[str]:
        """Get logs, optionally starting from a specific line index."""
        with self._logs_lock:
            if since is not None and since < len(self._logs):
                logs = self._logs[since:]
            else:
                logs = list(self._logs)
        if len(logs) > max_display_lines:
            logs = logs[-max_display_lines:]
        return logs

    def get_log_count(self) -> int:
        with self._logs_lock:
            return len(self._logs)

    def make_log_handler(self) -> LogCaptureHandler:
        return LogCaptureHandler(self._logs, self._logs_lock)


# Global state
run_state = RunState()
run_thread: Optional[threading.Thread] = None
run_lock = threading.Lock()


class CompressionRequest(BaseModel):
    """Request model for starting a compression run."""
    folder: str = Field(..., description="Folder to compress (recursive)")
    skip_extensions: List[str] = Field(default_factory=list, description="Extensions to skip, e.g. .zip")
    cache_file: Optional[str] = Field(default=None, description="Cache file (None for the default location)")
    workers: Optional[int] = Field(default=None, ge=1, description="Worker threads (None for auto)")
    queue_depth: Optional[int] = Field(default=None, ge=1, description="Maximum queued files (None for auto)")


class ResetCacheRequest(BaseModel):
    """Request model for deleting the cache snapshot."""
    cache_file: Optional[str] = Field(default=None, description="Cache file (None for the default location)")


def create_session(request: CompressionRequest) -> CompressionSession:
    """Build the session for a request; separate so tests can substitute collaborators."""
    return CompressionSession(
        cache_file=request.cache_file,
        workers=request.workers,
        queue_depth=request.queue_depth,
        show_progress=False
    )


def run_compression_thread(session: CompressionSession, request: CompressionRequest):
    """Run a session in a background thread and record its outcome."""
    log_handler = run_state.make_log_handler()
    root_logger = logging.getLogger()
    root_logger.addHandler(log_handler)
    root_logger.setLevel(logging.INFO)

    try:
        summary = session.run(request.folder, request.skip_extensions)
        run_state.set_finished(summary)
    except CacheCorruptError as e:
        logging.error(f"Error during loading from file: {e}")
        run_state.set_error(str(e))
    except Exception as e:
        run_state.set_error(str(e))
        logging.error(f"Compression error: {e}", exc_info=True)
    finally:
        root_logger.removeHandler(log_handler)
        log_handler.close()


@app.get("/", response_class=HTMLResponse)
async def root():
    """Serve a minimal HTML UI."""
    return """
    <!DOCTYPE html>
    <html>
    <head>
        <title>LZX Compression Server</title>
        <style>
            body { font-family: Arial, sans-serif; max-width: 1000px; margin: 0 auto; padding: 20px; }
            .container { background: #f5f5f5; padding: 20px; border-radius: 8px; margin-bottom: 20px; }
            input { width: 100%; padding: 8px; margin-top: 5px; box-sizing: border-box; }
            button { background: #4CAF50; color: white; padding: 10px 20px; border: none; border-radius: 4px; margin-top: 10px; }
            button.stop { background: #f44336; }
            pre { background: #1e1e1e; color: #d4d4d4; padding: 15px; max-height: 400px; overflow-y: auto; }
        </style>
    </head>
    <body>
        <h1>LZX Compression Server</h1>
        <div class="container">
            <label>Folder Path:</label>
            <input type="text" id="folder" value="C:\\">
            <label>Skip extensions (space separated):</label>
            <input type="text" id="skip" value=".zip .7z .jpg .mp4">
            <button onclick="start()">Start</button>
            <button class="stop" onclick="post('/api/stop')">Stop</button>
            <button onclick="post('/api/reset-cache', {})">Reset cache</button>
        </div>
        <div class="container"><h2>Status</h2><pre id="status"></pre></div>
        <div class="container"><h2>Logs</h2><pre id="logs"></pre></div>
        <script>
            async function post(url, body) {
                const r = await fetch(url, {method: 'POST', headers: {'Content-Type': 'application/json'},
                                            body: body ? JSON.stringify(body) : null});
                if (!r.ok) { alert((await r.json()).detail); }
            }
            function start() {
                const skip = document.getElementById('skip').value.split(' ').filter(s => s);
                post('/api/compress', {folder: document.getElementById('folder').value, skip_extensions: skip});
            }
            async function refresh() {
                const s = await (await fetch('/api/status')).json();
                document.getElementById('status').textContent = JSON.stringify(s, null, 2);
                const l = await (await fetch('/api/logs')).json();
                document.getElementById('logs').textContent = l.logs.join('\\n');
            }
            setInterval(refresh, 2000);
            refresh();
        </script>
    </body>
    </html>
    """


@app.post("/api/compress")
async def start_compression(request: CompressionRequest):
    """Start a compression run."""
    global run_thread

    with run_lock:
        if run_state.is_active():
            raise HTTPException(status_code=409, detail="Compression is already running")

        if not os.path.isdir(request.folder):
            raise HTTPException(status_code=400, detail=f"Folder does not exist: {request.folder}")

        run_state.reset()
        try:
            session = create_session(request)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        run_state.set_running(session, request.folder)
        run_thread = threading.Thread(
            target=run_compression_thread,
            args=(session, request),
            daemon=True
        )
        run_thread.start()

    return {"message": "Compression started", "status": "running"}


@app.get("/api/status")
async def get_status():
    """Get current compression status."""
    return run_state.get_status()


@app.post("/api/stop")
async def stop_compression():
    """Cancel the current run; queued files finish and the cache is saved."""
    with run_lock:
        if not run_state.request_stop():
            raise HTTPException(status_code=409, detail="No compression is currently running")
    return {"message": "Stop requested", "status": "stopping"}


@app.post("/api/reset-cache")
async def reset_cache(request: ResetCacheRequest):
    """Delete the change-detection cache so the next run recompresses everything."""
    with run_lock:
        if run_state.is_active():
            raise HTTPException(status_code=409, detail="Cannot reset the cache while compression is running")
        cache_file = request.cache_file or default_cache_file()
        removed = ChangeCache.reset(cache_file)
    return {"message": "Cache reset" if removed else "Cache file did not exist", "cache_file": cache_file}


@app.get("/api/logs")
async def get_logs(since: Optional[int] = None):
    """Get run logs, optionally starting from a specific line index."""
    return {
        "logs": run_state.get_logs(since=since),
        "total_lines": run_state.get_log_count(),
        "since": since or 0
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
