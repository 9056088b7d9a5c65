import math
import time

import pandas as pd
import streamlit as st

from creditnet.amm import get_base_price, get_effective_price, price_curve_points
from creditnet.config import DEFAULT_CLIENT_BALANCE, DEFAULT_SIM_SEED
from creditnet.engine import SimulationEngine
from creditnet.hooks import get_qos_multiplier
from creditnet.saga import state_machine_states

st.set_page_config(page_title="Autonomous Credit Network Simulator", layout="wide")


def get_engine() -> SimulationEngine:
    if "engine" not in st.session_state:
        st.session_state.seed = DEFAULT_SIM_SEED
        st.session_state.client_balance = DEFAULT_CLIENT_BALANCE
        st.session_state.engine = SimulationEngine(seed=DEFAULT_SIM_SEED, client_balance=DEFAULT_CLIENT_BALANCE)
    return st.session_state.engine


def reset_engine(guided: bool) -> None:
    st.session_state.engine = SimulationEngine(
        seed=int(st.session_state.get("seed", DEFAULT_SIM_SEED)),
        client_balance=float(st.session_state.get("client_balance", DEFAULT_CLIENT_BALANCE)),
        guided=guided,
    )


def _fmt(value: float) -> str:
    if not math.isfinite(value):
        return "inf"
    return f"{float(value):,.2f}"


def _fmt_duration(seconds: float) -> str:
    return f"{max(0.0, seconds):0.2f}s"


def _render_kpi_grid(kpis, columns: int = 5) -> None:
    for idx in range(0, len(kpis), columns):
        row = kpis[idx: idx + columns]
        cols = st.columns(columns)
        for col, (label, value) in zip(cols, row):
            col.metric(label, value)


def _agents_frame(engine: SimulationEngine) -> pd.DataFrame:
    rows = []
    for aid, a in engine.state.agents.items():
        rows.append({
            "agent": aid,
            "label": a.label,
            "status": a.status,
            "quota": a.quota,
            "reserved": a.reserved_quota,
            "y": a.y,
            "P=k/y^2": get_base_price(a),
            "P_eff(100)": get_effective_price(a, 100),
            "f": a.f,
            "s_hat": a.s_hat,
            "qos": get_qos_multiplier(a),
            "active": f"{a.active_tasks}/{a.capacity}",
            "done/failed": f"{a.total_completed}/{a.total_failed}",
            "balance": a.balance,
            "trade_balance": a.trade_balance,
        })
    return pd.DataFrame(rows)


engine = get_engine()

st.title("Autonomous Credit Network Simulator")
st.caption("AMM-priced routing, saga rollback and periodic Bancor clearing across autonomous agents.")

with st.sidebar:
    st.header("Sim Controls")

    st.subheader("Session")
    st.number_input("Random seed", min_value=1, max_value=2**32 - 1, key="seed")
    st.number_input("Client balance", min_value=1.0, step=1000.0, key="client_balance")
    c1, c2 = st.columns(2)
    if c1.button("Reset (free run)"):
        reset_engine(guided=False)
    if c2.button("Reset (guided)"):
        reset_engine(guided=True)
    engine = st.session_state.engine

    st.subheader("Time")
    c1, c2 = st.columns(2)
    if c1.button("Previous step"):
        engine.prev_step()
    if c2.button("Next step"):
        engine.next_step()
    target_step = st.number_input("Go to step", min_value=0, value=int(engine.phase), step=1)
    if st.button("Jump"):
        if not engine.go_to_step(int(target_step)):
            st.warning(f"Step {int(target_step)} has no snapshot and is past the guided script.")

    run_ticks = st.slider("Ticks to run", min_value=1, max_value=500, value=25)
    if st.button("Run N ticks"):
        progress_bar = st.progress(0.0, text="Run progress: 0%")
        start_ts = time.time()
        total = int(run_ticks)
        for idx in range(total):
            engine.next_step()
            progress_bar.progress((idx + 1) / total, text=f"Run progress: {(idx + 1) / total:.0%}")
        progress_bar.progress(1.0, text=f"Run progress: 100% ({_fmt_duration(time.time() - start_ts)})")
    st.caption(f"Phase {engine.phase}, tick {engine.tick}")

    st.subheader("Growth")
    new_id = st.text_input("Agent id (blank = auto)", value="")
    new_label = st.text_input("Label (blank = auto)", value="")
    if st.button("Add agent"):
        added = engine.add_agent(new_id or None, new_label or None)
        st.success(f"Agent {added} joined with bootstrapped parameters.")

state = engine.state

step_def = engine.current_step_definition()
if step_def is not None and engine.phase <= engine.guide_phases:
    st.subheader(f"Step {step_def.id}: {step_def.title}")
    st.caption(step_def.subtitle)
    st.write(step_def.narrative)
    if step_def.formula:
        st.latex(step_def.formula)

st.info(state.last_narrative or "Press 'Next step' to start.")

statuses = [t.status for t in state.tasks]
_render_kpi_grid([
    ("Tick", str(state.tick)),
    ("Client balance", _fmt(state.client_balance)),
    ("Agents", str(len(state.agents))),
    ("Isolated", str(sum(1 for a in state.agents.values() if a.status == "isolated"))),
    ("In flight", str(sum(1 for s in statuses if s in ("RESERVE", "DISPATCH", "VALIDATE")))),
    ("Committed", str(statuses.count("COMMITTED"))),
    ("Aborted", str(statuses.count("ABORTED"))),
    ("Ledger entries", str(len(state.ledger))),
], columns=4)

tab_agents, tab_metrics, tab_curve, tab_ledger, tab_saga = st.tabs(
    ["Agents", "Metrics", "Price curve", "Ledger", "Task saga"]
)

with tab_agents:
    st.dataframe(_agents_frame(engine), use_container_width=True)
    st.subheader("Latest price comparison")
    if state.price_comparison:
        cmp_df = pd.DataFrame(
            [{"agent": aid, "P_eff": price, "available": math.isfinite(price)}
             for aid, price in state.price_comparison.items()]
        )
        st.dataframe(cmp_df, use_container_width=True)
    else:
        st.caption("No quotes compared yet.")

with tab_metrics:
    net_df = engine.metrics.network_df()
    if net_df.empty or len(net_df) < 2:
        st.info("No metrics yet. Run a few ticks.")
    else:
        st.subheader("Task outcomes")
        st.line_chart(net_df, x="tick", y=["committed", "aborted", "inflight"])
        st.subheader("Client balance")
        st.line_chart(net_df, x="tick", y=["client_balance"])
        st.subheader("Route concentration")
        st.line_chart(net_df, x="tick", y=["top1_share", "hhi"])
        agent_df = engine.metrics.agent_df()
        if not agent_df.empty:
            st.subheader("Friction per agent")
            st.line_chart(agent_df.pivot_table(index="tick", columns="agent_id", values="f"))
            st.subheader("Base price per agent")
            st.line_chart(agent_df.pivot_table(index="tick", columns="agent_id", values="base_price"))

with tab_curve:
    agent_ids = list(state.agents.keys())
    selected = st.selectbox("Agent", agent_ids)
    agent = state.agents[selected]
    points = price_curve_points(agent.k, max(1.0, agent.quota * 0.05), agent.quota, steps=120)
    curve_df = pd.DataFrame(points, columns=["y", "price"])
    st.line_chart(curve_df, x="y", y="price")
    st.caption(f"Current y={agent.y:,.0f}, P={get_base_price(agent):,.2f}")

with tab_ledger:
    tail = st.slider("Entries", min_value=10, max_value=500, value=50)
    ledger_df = pd.DataFrame([e.to_dict() for e in state.ledger[-tail:]])
    if ledger_df.empty:
        st.caption("Ledger is empty.")
    else:
        st.dataframe(ledger_df.iloc[::-1], use_container_width=True)

with tab_saga:
    edges = pd.DataFrame(state_machine_states(), columns=["status", "label", "terminal"])
    st.dataframe(edges, use_container_width=True)
    tasks_df = pd.DataFrame([
        {
            "id": t.id,
            "agent": t.assigned_to,
            "status": t.status,
            "delta": t.delta,
            "P_eff": t.effective_price,
            "payment": t.payment,
            "ready_tick": t.ready_tick,
            "validator": t.validator.reason if t.validator else "",
        }
        for t in state.tasks[-200:]
    ])
    if not tasks_df.empty:
        st.dataframe(tasks_df.iloc[::-1], use_container_width=True)
