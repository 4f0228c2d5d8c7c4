# dashboard.py
import html
import json

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse

from models import to_iso
from storage import Storage

app = FastAPI(title="schedctl dashboard")

STATES = ("scheduled", "locked", "completed", "failed", "disabled", "unscheduled")
STATE_COLORS = ("#2196F3", "#9C27B0", "#4CAF50", "#F44336", "#9E9E9E", "#FF9800")

_db = None


def get_storage() -> Storage:
    global _db
    if _db is None:
        _db = Storage()
    return _db


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  .navbar a:hover { text-decoration: underline; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  tr:hover { background-color: #e0f7fa; }
  canvas { margin-top: 20px; display: block; max-width: 600px; }
  a { color: #1976D2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str, include_chart_js: bool = False) -> str:
    script_tag = '<script src="https://cdn.jsdelivr.net/npm/chart.js"></script>' if include_chart_js else ''
    return f"""
    <html>
    <head>
      <title>{title}</title>
      {script_tag}
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Home</a>
        <a href="/metrics">📈 Metrics</a>
        <a href="/failed">❗ Failed</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _ts(value) -> str:
    return to_iso(value) if value else "-"


def _esc(value) -> str:
    return html.escape(str(value)) if value is not None else "-"


def _job_rows(jobs) -> str:
    rows = ""
    for job in jobs:
        repeat = job.repeat_interval or job.repeat_at or "-"
        rows += (
            f"<tr><td><a href='/job/{job.id}'>{job.id}</a></td><td>{_esc(job.name)}</td>"
            f"<td>{job.state}</td><td>{job.priority}</td><td>{_ts(job.next_run_at)}</td>"
            f"<td>{_ts(job.last_finished_at)}</td><td>{_esc(repeat)}</td><td>{job.fail_count}</td></tr>"
        )
    return rows


JOB_TABLE_HEADER = (
    "<tr><th>ID</th><th>Name</th><th>State</th><th>Priority</th><th>Next run</th>"
    "<th>Last finished</th><th>Repeat</th><th>Fails</th></tr>"
)


def _state_counts(db: Storage) -> dict:
    counts = dict.fromkeys(STATES, 0)
    counts.update(db.count_by_state())
    return counts


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(db: Storage = Depends(get_storage)):
    jobs = db.find(sort={"updated_at": -1}, limit=50)

    table_html = f"""
    <h2>Recent jobs</h2>
    <table>
      {JOB_TABLE_HEADER}
      {_job_rows(jobs)}
    </table>
    """

    labels = json.dumps([s.capitalize() for s in STATES])
    keys = json.dumps(list(STATES))
    colors = json.dumps(list(STATE_COLORS))
    charts_html = f"""
      <h2>Job states</h2>
      <canvas id="jobChart"></canvas>

      <script>
        async function loadCharts() {{
          const res = await fetch('/metrics/json');
          const counts = (await res.json()).states;

          new Chart(document.getElementById('jobChart'), {{
            type: 'pie',
            data: {{
              labels: {labels},
              datasets: [{{
                data: {keys}.map(k => counts[k]),
                backgroundColor: {colors}
              }}]
            }}
          }});
        }}
        loadCharts();
      </script>
    """

    return page("📊 Scheduler Dashboard", table_html + charts_html, include_chart_js=True)


# ---------- Metrics ----------
@app.get("/metrics", response_class=HTMLResponse)
def metrics_page(db: Storage = Depends(get_storage)):
    counts = _state_counts(db)
    cards = "".join(
        f'<div class="card"><h3>{state.capitalize()}</h3><p>{count}</p></div>'
        for state, count in counts.items()
    )
    body = f"""
      <div class="cards">{cards}</div>
      <p class="muted">Tip: Use the CLI "status" command for scriptable outputs.</p>
    """
    return page("📈 Metrics", body)


@app.get("/metrics/json", response_class=JSONResponse)
def metrics_json(db: Storage = Depends(get_storage)):
    return {"states": _state_counts(db), **db.totals()}


@app.get("/jobs/json", response_class=JSONResponse)
def jobs_json(name: str = None, state: str = None, limit: int = 50, db: Storage = Depends(get_storage)):
    if state:
        if state not in STATES:
            raise HTTPException(status_code=400, detail=f"Unknown state {state!r}")
        jobs = db.find_by_state(state, limit, name=name)
    else:
        jobs = db.find({"name": name} if name else None, sort={"next_run_at": 1, "priority": -1}, limit=limit)
    return [job.snapshot() for job in jobs]


# ---------- Failed ----------
@app.get("/failed", response_class=HTMLResponse)
def failed_page(db: Storage = Depends(get_storage)):
    jobs = db.find_with_failures(limit=100)

    body = """
      <h2>Jobs with failures</h2>
      <table>
        <tr><th>ID</th><th>Name</th><th>State</th><th>Fails</th><th>Attempts</th><th>Failed at</th><th>Reason</th></tr>
    """
    if not jobs:
        body += "</table><p class='muted'>No failed jobs.</p>"
    else:
        for job in jobs:
            body += (
                f"<tr><td><a href='/job/{job.id}'>{job.id}</a></td><td>{_esc(job.name)}</td><td>{job.state}</td>"
                f"<td>{job.fail_count}</td><td>{job.attempts_made}/{job.attempts}</td>"
                f"<td>{_ts(job.failed_at)}</td><td>{_esc(job.fail_reason)}</td></tr>"
            )
        body += "</table><p class='muted'>Use CLI \"enqueue\" or \"resume\" to run them again.</p>"

    return page("❗ Failed Jobs", body)


# ---------- Config ----------
@app.get("/config", response_class=HTMLResponse)
def config_page(db: Storage = Depends(get_storage)):
    rows = db.all_config()

    body = """
      <h2>Runtime configuration</h2>
      <table>
        <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
    """
    if not rows:
        body += "</table><p class='muted'>No config entries found.</p>"
    else:
        for r in rows:
            body += f"<tr><td>{_esc(r['key'])}</td><td>{_esc(r['value'])}</td><td>{r['updated_at']}</td></tr>"
        body += "</table><p class='muted'>Use CLI config set/get to manage values.</p>"

    return page("⚙ Config", body)


# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: str, db: Storage = Depends(get_storage)):
    job = db.get(job_id)
    if not job:
        return HTMLResponse(page("❌ Job not found", f"<p>Job {_esc(job_id)} not found.</p>"), status_code=404)

    repeat = job.repeat_interval or job.repeat_at or "-"
    if job.repeat_timezone:
        repeat += f" [{job.repeat_timezone}]"
    result = json.dumps(job.result, indent=2, default=str) if job.result is not None else "(no result saved)"

    body = f"""
      <h2>Job {job.id}</h2>
      <div class="cards">
        <div class="card"><b>Name</b><p>{_esc(job.name)} ({job.type})</p></div>
        <div class="card"><b>State</b><p>{job.state}</p></div>
        <div class="card"><b>Priority</b><p>{job.priority}</p></div>
        <div class="card"><b>Repeat</b><p>{_esc(repeat)}</p></div>
        <div class="card"><b>Attempts</b><p>{job.attempts_made}/{job.attempts}</p></div>
        <div class="card"><b>Failures</b><p>{job.fail_count}</p></div>
      </div>

      <h3>Timestamps</h3>
      <table>
        <tr><th>Created</th><td>{_ts(job.created_at)}</td></tr>
        <tr><th>Next run</th><td>{_ts(job.next_run_at)}</td></tr>
        <tr><th>Last run</th><td>{_ts(job.last_run_at)}</td></tr>
        <tr><th>Last finished</th><td>{_ts(job.last_finished_at)}</td></tr>
        <tr><th>Locked at</th><td>{_ts(job.locked_at)}</td></tr>
        <tr><th>Failed at</th><td>{_ts(job.failed_at)}</td></tr>
        <tr><th>Updated</th><td>{_ts(job.updated_at)} by {_esc(job.last_modified_by)}</td></tr>
      </table>

      <h3>Data</h3>
      <pre>{_esc(json.dumps(job.data, indent=2))}</pre>

      <h3>Error</h3>
      <pre>{_esc(job.fail_reason)}</pre>

      <h3>Result</h3>
      <pre>{_esc(result)}</pre>
    """
    return page(f"🔎 Job {job.id} Detail", body)
