#!/usr/bin/env python3
"""
Generate a single-file HTML dashboard from trello_analytics_latest.json.
Run: python generate_dashboard.py [path/to/trello_analytics_latest.json] [-o out.html]
Output: trello_dashboard.html
"""
import argparse
import html
import json
import os
import sys

OUT_NAME = "trello_dashboard.html"


def load_data(path=None):
    path = path or os.path.join(os.path.dirname(os.path.abspath(__file__)), "trello_analytics_latest.json")
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _minutes(v):
    if v is None:
        return "\u2014"
    return f"{v / 60:.1f}h" if v >= 120 else f"{round(v)}m"


def _card_link(name, url):
    name = html.escape(name or "(unnamed)")
    if url:
        return f'<a href="{html.escape(url)}" target="_blank" rel="noopener">{name}</a>'
    return name


def _kpi_rows(kpi):
    rows = kpi.get("members") or []
    if not rows:
        return '<tr><td colspan="3">None</td></tr>'
    return "".join(
        f'<tr data-member="{html.escape(r.get("member_id", ""))}"><td>{html.escape(r.get("name", ""))}</td>'
        f'<td>{round(float(r.get("points", 0)), 2)}</td><td>{r.get("card_count", 0)}</td></tr>'
        for r in rows
    )


def _excluded_rows(kpi):
    rows = []
    for key, why in (("multi_assignee", "3+ assignees"), ("no_points", "no level label"),
                     ("multi_level", "several level labels")):
        for c in kpi.get(key) or []:
            rows.append(f'<tr><td>{_card_link(c.get("name"), c.get("shortUrl"))}</td><td>{why}</td>'
                        f'<td>{len(c.get("members") or [])}</td></tr>')
    return "".join(rows) or '<tr><td colspan="3">None</td></tr>'


def _action_rows(members):
    rows = []
    for m in members:
        for a in m.get("actions") or []:
            cats = ", ".join(a.get("categories") or [])
            where = a.get("list_after") or ""
            if a.get("list_before") and a.get("list_after"):
                where = f'{a["list_before"]} → {a["list_after"]}'
            rows.append(
                f'<tr data-member="{html.escape(m.get("member_id", ""))}">'
                f'<td>{html.escape(a.get("local_time") or "")}</td>'
                f'<td>{html.escape(m.get("name", ""))}</td>'
                f'<td>{html.escape(a.get("type") or "")}</td>'
                f'<td>{html.escape((a.get("card_name") or "")[:70])}</td>'
                f'<td>{html.escape(where)}</td>'
                f'<td>{html.escape(cats)}</td></tr>'
            )
    return "".join(rows) or '<tr><td colspan="6">None</td></tr>'


def render(data):
    """The dashboard page for one analytics snapshot, as an HTML string."""
    data_js = json.dumps(data, ensure_ascii=False).replace("</", "<\\/")
    run_ts = data.get("run_iso_ts", "")
    shift = data.get("shift") or "Whole day"
    members = data.get("members") or []
    shift_counts = data.get("shift_counts") or {}
    cat_counts = data.get("category_counts") or {}
    issue_kpi = data.get("issue_kpi") or {}
    bug_kpi = data.get("bug_kpi") or {}
    by_team = data.get("issues_by_team") or {}
    by_app = data.get("issues_by_app") or {}
    res = (data.get("resolution_time") or {}).get("summary") or {}
    dev_res = (data.get("dev_resolution_time") or {}).get("summary") or {}
    overdue = data.get("overdue_confirmation") or []
    truncated = data.get("truncated_windows") or []
    errors = data.get("errors") or []

    member_rows = "".join(
        f'<tr data-member="{html.escape(m.get("member_id", ""))}"><td>{html.escape(m.get("name", ""))}</td>'
        f'<td>{html.escape(m.get("group", ""))}</td><td>{m.get("total", 0)}</td>'
        + "".join(f'<td>{(m.get("counts") or {}).get(c, 0)}</td>' for c in cat_counts)
        + "</tr>"
        for m in members
    ) if members else f'<tr><td colspan="{3 + len(cat_counts)}">None</td></tr>'

    overdue_rows = "".join(
        f'<tr><td>{html.escape(o.get("card_name") or "")}</td><td>{html.escape(o.get("moved_at") or "")}</td>'
        f'<td>{o.get("days_overdue", 0)}</td></tr>'
        for o in overdue
    ) if overdue else '<tr><td colspan="3">None</td></tr>'

    warnings = "".join(
        f'<div class="warn">Window {html.escape(t["since"])} → {html.escape(t["before"])} hit the per-call cap; counts may be low.</div>'
        for t in truncated
    ) + "".join(f'<div class="warn red">{html.escape(e)}</div>' for e in errors)

    issue_total = sum(float(r.get("points", 0)) for r in issue_kpi.get("members") or [])
    bug_total = sum(float(r.get("points", 0)) for r in bug_kpi.get("members") or [])

    html_out = f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Trello Shift Dashboard \u2014 {html.escape(data.get("date", ""))} {html.escape(shift)}</title>
  <script src="https://cdn.jsdelivr.net/npm/chart.js@4.4.0/dist/chart.umd.min.js"></script>
  <style>
    :root {{ --bg: #0f1419; --card: #1a2332; --text: #e6edf3; --muted: #8b949e; --accent: #58a6ff; --green: #3fb950; --orange: #d29922; --red: #f85149; }}
    * {{ box-sizing: border-box; }}
    body {{ font-family: 'Segoe UI', system-ui, sans-serif; background: var(--bg); color: var(--text); margin: 0; padding: 1rem; line-height: 1.5; }}
    h1 {{ font-size: 1.5rem; margin: 0 0 0.5rem; }}
    a {{ color: var(--accent); }}
    .meta {{ color: var(--muted); font-size: 0.875rem; margin-bottom: 1.5rem; }}
    .cards {{ display: grid; grid-template-columns: repeat(auto-fill, minmax(130px, 1fr)); gap: 0.75rem; margin-bottom: 2rem; }}
    .card {{ background: var(--card); border-radius: 8px; padding: 0.75rem; border: 1px solid #30363d; }}
    .card .value {{ font-size: 1.5rem; font-weight: 700; color: var(--accent); }}
    .card .label {{ font-size: 0.7rem; text-transform: uppercase; color: var(--muted); margin-top: 0.15rem; }}
    section {{ margin-bottom: 2rem; }}
    section h2 {{ font-size: 1.125rem; margin-bottom: 1rem; color: var(--muted); border-bottom: 1px solid #30363d; padding-bottom: 0.5rem; }}
    .chart-wrap {{ max-width: 600px; height: 280px; margin-bottom: 1rem; }}
    .grid2 {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(320px, 1fr)); gap: 1.5rem; }}
    table {{ width: 100%; border-collapse: collapse; font-size: 0.85rem; }}
    th, td {{ padding: 0.4rem 0.6rem; text-align: left; border-bottom: 1px solid #30363d; }}
    th {{ color: var(--muted); font-weight: 600; cursor: pointer; user-select: none; white-space: nowrap; }}
    th:hover {{ color: var(--accent); }}
    .filter {{ margin-bottom: 0.75rem; }}
    .filter input {{ background: var(--card); border: 1px solid #30363d; color: var(--text); padding: 0.4rem 0.6rem; border-radius: 6px; width: 100%; max-width: 240px; }}
    .filter input::placeholder {{ color: var(--muted); }}
    .table-wrap {{ overflow-x: auto; }}
    .member-filter {{ display: flex; flex-wrap: wrap; align-items: center; gap: 0.5rem 0.75rem; margin-bottom: 1rem; padding: 0.6rem; background: var(--card); border-radius: 8px; border: 1px solid #30363d; }}
    .member-filter label {{ display: inline-flex; align-items: center; gap: 0.3rem; cursor: pointer; font-size: 0.8rem; }}
    .member-filter input[type="checkbox"] {{ accent-color: var(--accent); }}
    .member-filter .mf-label {{ color: var(--muted); margin-right: 0.2rem; }}
    .warn {{ background: var(--card); border-radius: 8px; padding: 0.5rem 1rem; border-left: 4px solid var(--orange); font-size: 0.85rem; margin-bottom: 0.5rem; }}
    .warn.red {{ border-left-color: var(--red); }}
  </style>
</head>
<body>
  <h1>Trello Shift Dashboard</h1>
  <p class="meta">Run: {html.escape(run_ts)} · {html.escape(data.get("date", ""))} · {html.escape(shift)} ({html.escape(data.get("granularity", ""))}, {html.escape(data.get("timezone", ""))})</p>
  {warnings}

  <div class="member-filter">
    <span class="mf-label">Member:</span>
    <label><input type="checkbox" id="memberAll" checked /> All</label>
    {''.join(f'<label><input type="checkbox" class="member-cb" value="{html.escape(m.get("member_id", ""))}" /> {html.escape(m.get("name", ""))}</label>' for m in members)}
  </div>

  <div class="cards">
    <div class="card"><div class="value">{data.get("action_count", 0)}</div><div class="label">Actions</div></div>
    <div class="card"><div class="value" style="color: var(--green)">{cat_counts.get("move_to_done", 0)}</div><div class="label">Moved to done</div></div>
    <div class="card"><div class="value">{cat_counts.get("complete", 0)}</div><div class="label">Completed</div></div>
    <div class="card"><div class="value" style="color: var(--orange)">{cat_counts.get("assigned", 0)}</div><div class="label">Assigned</div></div>
    <div class="card"><div class="value">{round(issue_total, 1)}</div><div class="label">Issue KPI points</div></div>
    <div class="card"><div class="value">{round(bug_total, 1)}</div><div class="label">Bug KPI points</div></div>
    <div class="card"><div class="value">{_minutes(res.get("p50_minutes"))}</div><div class="label">Resolution p50</div></div>
    <div class="card"><div class="value">{_minutes(dev_res.get("p50_minutes"))}</div><div class="label">Dev fix p50</div></div>
    <div class="card"><div class="value" style="color: var(--red)">{len(overdue)}</div><div class="label">Overdue confirmation</div></div>
  </div>

  <div class="grid2">
    <section>
      <h2>Actions by shift</h2>
      <div class="chart-wrap"><canvas id="chartShifts"></canvas></div>
    </section>
    <section>
      <h2>Actions by category</h2>
      <div class="chart-wrap"><canvas id="chartCategories"></canvas></div>
    </section>
    <section>
      <h2>Done issues by product team</h2>
      <div class="chart-wrap"><canvas id="chartTeams"></canvas></div>
    </section>
    <section>
      <h2>Done issues by app</h2>
      <div class="chart-wrap"><canvas id="chartApps"></canvas></div>
    </section>
  </div>

  <section>
    <h2>TS member activity</h2>
    <div class="table-wrap">
      <table id="tableMembers">
        <thead><tr><th data-sort>Member</th><th data-sort>Group</th><th data-sort>Total</th>{''.join(f'<th data-sort>{html.escape(c.replace("_", " "))}</th>' for c in cat_counts)}</tr></thead>
        <tbody>{member_rows}</tbody>
      </table>
    </div>
  </section>

  <div class="grid2">
    <section>
      <h2>Issue KPI</h2>
      <table id="tableIssueKpi">
        <thead><tr><th data-sort>Member</th><th data-sort>Points</th><th data-sort>Cards</th></tr></thead>
        <tbody>{_kpi_rows(issue_kpi)}</tbody>
      </table>
    </section>
    <section>
      <h2>Bug KPI</h2>
      <table id="tableBugKpi">
        <thead><tr><th data-sort>Member</th><th data-sort>Points</th><th data-sort>Cards</th></tr></thead>
        <tbody>{_kpi_rows(bug_kpi)}</tbody>
      </table>
    </section>
    <section>
      <h2>Issue cards not credited</h2>
      <table>
        <thead><tr><th>Card</th><th>Reason</th><th>Assignees</th></tr></thead>
        <tbody>{_excluded_rows(issue_kpi)}</tbody>
      </table>
    </section>
    <section>
      <h2>Waiting for customer confirmation (over SLA)</h2>
      <table id="tableOverdue">
        <thead><tr><th data-sort>Card</th><th data-sort>Moved in</th><th data-sort>Days overdue</th></tr></thead>
        <tbody>{overdue_rows}</tbody>
      </table>
    </section>
  </div>

  <section>
    <h2>Action log</h2>
    <div class="filter"><input type="search" id="filterActions" placeholder="Filter actions..." /></div>
    <div class="table-wrap">
      <table id="tableActions">
        <thead><tr><th data-sort>Time</th><th data-sort>Member</th><th data-sort>Type</th><th data-sort>Card</th><th data-sort>List</th><th data-sort>Category</th></tr></thead>
        <tbody>{_action_rows(members)}</tbody>
      </table>
    </div>
  </section>

  <script>
    const DATA = {data_js};

    const barOpts = (horizontal) => ({{ indexAxis: horizontal ? 'y' : 'x', responsive: true, maintainAspectRatio: false, plugins: {{ legend: {{ display: false }} }} }});

    new Chart(document.getElementById('chartShifts'), {{
      type: 'bar',
      data: {{ labels: {json.dumps(list(shift_counts.keys()))}, datasets: [{{ label: 'Actions', data: {json.dumps(list(shift_counts.values()))}, backgroundColor: 'rgba(88,166,255,0.6)' }}] }},
      options: barOpts(false)
    }});

    new Chart(document.getElementById('chartCategories'), {{
      type: 'bar',
      data: {{ labels: {json.dumps([c.replace("_", " ") for c in cat_counts])}, datasets: [{{ label: 'Actions', data: {json.dumps(list(cat_counts.values()))}, backgroundColor: 'rgba(63,185,80,0.6)' }}] }},
      options: barOpts(true)
    }});

    new Chart(document.getElementById('chartTeams'), {{
      type: 'doughnut',
      data: {{ labels: {json.dumps(list(by_team.keys()), ensure_ascii=False)}, datasets: [{{ data: {json.dumps(list(by_team.values()))}, backgroundColor: ['#58a6ff','#3fb950','#d29922','#f85149','#a371f7','#e3b341','#8b949e'] }}] }},
      options: {{ responsive: true, maintainAspectRatio: false }}
    }});

    new Chart(document.getElementById('chartApps'), {{
      type: 'bar',
      data: {{ labels: {json.dumps(list(by_app.keys()), ensure_ascii=False)}, datasets: [{{ label: 'Issues', data: {json.dumps(list(by_app.values()))}, backgroundColor: 'rgba(210,153,34,0.6)' }}] }},
      options: barOpts(true)
    }});

    function getSelectedMembers() {{
      if (document.getElementById('memberAll').checked) return null;
      const picked = Array.from(document.querySelectorAll('.member-cb:checked')).map(cb => cb.value);
      return picked.length ? picked : null;
    }}

    function applyMemberFilter() {{
      const sel = getSelectedMembers();
      const q = (document.getElementById('filterActions').value || '').trim().toLowerCase();
      document.querySelectorAll('tr[data-member]').forEach(tr => {{
        const memberOk = sel === null || sel.includes(tr.dataset.member);
        const textOk = !q || tr.closest('#tableActions') === null || tr.textContent.toLowerCase().includes(q);
        tr.style.display = (memberOk && textOk) ? '' : 'none';
      }});
    }}

    const memberAll = document.getElementById('memberAll');
    const memberCbs = document.querySelectorAll('.member-cb');
    memberAll.addEventListener('change', function() {{
      if (this.checked) memberCbs.forEach(cb => {{ cb.checked = false; }});
      applyMemberFilter();
    }});
    memberCbs.forEach(cb => {{
      cb.addEventListener('change', function() {{
        memberAll.checked = !document.querySelector('.member-cb:checked');
        applyMemberFilter();
      }});
    }});
    document.getElementById('filterActions').addEventListener('input', applyMemberFilter);

    function setupSort(tableId) {{
      const table = document.getElementById(tableId);
      if (!table) return;
      table.querySelectorAll('thead th[data-sort]').forEach(th => {{
        th.addEventListener('click', () => {{
          const tbody = table.querySelector('tbody');
          const rows = Array.from(tbody.querySelectorAll('tr')).filter(r => r.style.display !== 'none' && r.cells.length > 1);
          const col = Array.from(table.querySelectorAll('thead th')).indexOf(th);
          const desc = th.getAttribute('aria-sort') === 'ascending';
          th.setAttribute('aria-sort', desc ? 'descending' : 'ascending');
          table.querySelectorAll('thead th').forEach(h => {{ if (h !== th) h.removeAttribute('aria-sort'); }});
          const num = (s) => {{ const n = parseFloat(s); return isNaN(n) ? (s||'').toString().toLowerCase() : n; }};
          rows.sort((a, b) => {{
            const va = num(a.cells[col]?.textContent?.trim());
            const vb = num(b.cells[col]?.textContent?.trim());
            const cmp = (typeof va === 'number' && typeof vb === 'number') ? va - vb : String(va).localeCompare(String(vb));
            return desc ? -cmp : cmp;
          }});
          rows.forEach(r => tbody.appendChild(r));
        }});
      }});
    }}

    ['tableMembers', 'tableIssueKpi', 'tableBugKpi', 'tableOverdue', 'tableActions'].forEach(setupSort);
  </script>
</body>
</html>"""
    return html_out


def main(argv=None):
    parser = argparse.ArgumentParser(description="Render trello_analytics_latest.json as an HTML dashboard.")
    parser.add_argument("path", nargs="?", help="Snapshot JSON (default: trello_analytics_latest.json)")
    parser.add_argument("-o", "--out", help=f"Output file (default: {OUT_NAME} next to this script)")
    args = parser.parse_args(argv)

    data = load_data(args.path)
    out_path = args.out or os.path.join(os.path.dirname(os.path.abspath(__file__)), OUT_NAME)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(render(data))
    print(f"Written: {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main() or 0)
