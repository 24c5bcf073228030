"""Static viewer page served at ``/``.

The page is only a consumer of ``/events``: operations are listed in
the sidebar by first appearance, clicking one shows its log, and an
operation with no terminal event after the liveness window is marked
stalled.
"""
from __future__ import annotations

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>codexdev progress</title>
<style>
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: Consolas, "Fira Code", monospace; background: #0d1117;
         color: #c9d1d9; font-size: 13px; line-height: 1.5; }
  header { display: flex; justify-content: space-between; align-items: center;
           padding: 8px 16px; background: #161b22; border-bottom: 1px solid #30363d; }
  header h1 { font-size: 14px; color: #58a6ff; }
  #conn { font-size: 12px; padding: 2px 8px; border-radius: 12px; }
  #conn.on { color: #3fb950; } #conn.off { color: #f85149; }
  main { display: flex; height: calc(100vh - 40px); }
  #ops { width: 240px; border-right: 1px solid #30363d; overflow-y: auto; }
  .op { padding: 6px 12px; cursor: pointer; border-bottom: 1px solid #21262d; }
  .op.sel { background: #161b22; }
  .op .st { font-size: 11px; color: #8b949e; }
  .op.running .st { color: #58a6ff; } .op.ok .st { color: #3fb950; }
  .op.failed .st { color: #f85149; } .op.stalled .st { color: #d29922; }
  #log { flex: 1; overflow-y: auto; padding: 8px 16px; white-space: pre-wrap; }
  .ev { padding: 2px 0; } .ev .t { color: #8b949e; margin-right: 8px; }
  .ev .k { display: inline-block; width: 110px; color: #d2a8ff; }
  .ev.error .k, .ev.error .c { color: #f85149; }
</style>
</head>
<body>
<header><h1>codexdev progress</h1><span id="conn" class="off">connecting</span></header>
<main><div id="ops"></div><div id="log"></div></main>
<script>
  const STALE_MS = __LIVENESS_MS__;
  const ops = new Map();
  let selected = null;
  const opsEl = document.getElementById('ops');
  const logEl = document.getElementById('log');
  const conn = document.getElementById('conn');

  function status(op) {
    if (op.done) return op.done;
    if (Date.now() - op.lastSeen > STALE_MS) return 'stalled';
    return 'running';
  }

  function renderOps() {
    opsEl.innerHTML = '';
    for (const [id, op] of ops) {
      const el = document.createElement('div');
      const st = status(op);
      el.className = 'op ' + st + (id === selected ? ' sel' : '');
      el.innerHTML = '<div></div><div class="st"></div>';
      el.firstChild.textContent = op.title;
      el.lastChild.textContent = st;
      el.onclick = () => { selected = id; renderOps(); renderLog(); };
      opsEl.appendChild(el);
    }
  }

  function renderLog() {
    logEl.innerHTML = '';
    const op = ops.get(selected);
    if (!op) return;
    for (const ev of op.events) {
      const row = document.createElement('div');
      row.className = 'ev ' + ev.type;
      row.innerHTML = '<span class="t"></span><span class="k"></span><span class="c"></span>';
      row.children[0].textContent = ev.timestamp.slice(11, 19);
      row.children[1].textContent = ev.type;
      row.children[2].textContent = ev.content;
      logEl.appendChild(row);
    }
    logEl.scrollTop = logEl.scrollHeight;
  }

  function onEvent(ev) {
    let op = ops.get(ev.operationId);
    if (!op) {
      op = { title: ev.operationId, events: [], done: null, lastSeen: Date.now() };
      ops.set(ev.operationId, op);
      if (!selected || ops.get(selected).done) selected = ev.operationId;
    }
    if (ev.type === 'start' && op.events.length === 0) op.title = ev.content;
    op.events.push(ev);
    op.lastSeen = Date.now();
    if (ev.type === 'end') op.done = ev.content === 'failed' ? 'failed' : 'ok';
    if (ev.type === 'error') op.done = 'failed';
    renderOps();
    if (ev.operationId === selected) renderLog();
  }

  function connect() {
    const es = new EventSource('/events');
    es.onopen = () => { conn.textContent = 'connected'; conn.className = 'on'; };
    es.onerror = () => { conn.textContent = 'disconnected'; conn.className = 'off'; };
    es.addEventListener('progress', (msg) => {
      try { onEvent(JSON.parse(msg.data)); } catch (e) { console.warn(e); }
    });
  }

  setInterval(renderOps, 5000);
  connect();
</script>
</body>
</html>
"""


def render_progress_page(liveness_window_seconds: int = 60) -> str:
    return _PAGE.replace("__LIVENESS_MS__", str(int(liveness_window_seconds * 1000)))
