"""
CareGuide — guided daily-living tasks and parent guidance

================================================================================
HOW THIS SCRIPT WORKS (for studying)
================================================================================

This is the main Streamlit entry point. Streamlit re-runs top to bottom on
every user interaction. State persists via st.session_state.

  FLOW:
  1. Page config
  2. Session state init (nav, chosen task, repetition mode, chat, registry)
  3. SIDEBAR: navigation, task settings (repetition mode, interval, volume, debug)
  4. MAIN AREA:
     - TASK PLAYER: "Start task" opens a TaskSession through the
       SessionRegistry (one per view, so restarting stops the old camera
       loop first). The session runs on its own background thread; a
       @st.fragment(run_every=1s) reads session.snapshot() and renders the
       step, progress bar, camera frame, debug panel and control buttons.
       Fallback narration clips (network TTS) are played with st.audio.
     - GUIDANCE: chat with the Gemini guidance assistant (brain.py), with
       age / condition selectors for the age-specific plan.
     - REPORT: summary of the last run from the event log, CSV export.

  RUN:
    streamlit run app.py  →  http://localhost:8501
"""

import base64
from datetime import datetime, timedelta
from pathlib import Path

import cv2
import numpy as np
import streamlit as st

from brain import GuidanceChat, GuidanceResponse, plan_for
from careguide.catalog import load_catalog
from careguide.config import load_player_config
from careguide.constants import (
    AGES, CONDITIONS, CONDITION_LABELS, DEFAULT_REPETITION_SECONDS,
    KEY_AGE, KEY_CHAT, KEY_CONDITION, KEY_CUSTOM_INTERVAL, KEY_DEBUG,
    KEY_NAV, KEY_REPETITION_MODE, KEY_SESSIONS, KEY_TASK_ID, KEY_VOLUME,
    MEDIA_DIR, PLAYER_VIEW_KEY, REPETITION_AI, REPETITION_FIXED, SPEECH_VOLUME,
    TASKS_DIR,
)
from careguide.detector import draw_detections
from careguide.hands import draw_hands
from careguide.logger import read_events
from careguide.report import events_to_csv, summarize_session, summary_to_json
from careguide.session import PlayerSnapshot, SessionRegistry, build_session

# =============================================================================
# Page config
# =============================================================================

st.set_page_config(
    page_title="CareGuide",
    page_icon="🪥",
    layout="wide",
    initial_sidebar_state="expanded",
)

# =============================================================================
# Helpers
# =============================================================================


@st.cache_resource
def cached_catalog():
    return load_catalog(TASKS_DIR)


def init_session_state() -> None:
    defaults = {
        KEY_NAV: lambda: "Task Player",
        KEY_TASK_ID: lambda: "brushing-teeth",
        KEY_REPETITION_MODE: lambda: REPETITION_AI,
        KEY_CUSTOM_INTERVAL: lambda: DEFAULT_REPETITION_SECONDS,
        KEY_DEBUG: lambda: False,
        KEY_VOLUME: lambda: SPEECH_VOLUME,
        KEY_CHAT: GuidanceChat,
        KEY_AGE: lambda: AGES[0],
        KEY_CONDITION: lambda: CONDITIONS[0],
        KEY_SESSIONS: SessionRegistry,
    }
    for key, factory in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = factory()


def display_frame(frame_bgr: np.ndarray) -> None:
    """Embed a BGR frame as a base64 JPEG data-URI, bypassing Streamlit media storage."""
    _, buf = cv2.imencode(".jpg", frame_bgr, [cv2.IMWRITE_JPEG_QUALITY, 85])
    b64 = base64.b64encode(buf.tobytes()).decode("ascii")
    st.markdown(
        f'<img src="data:image/jpeg;base64,{b64}" style="width:100%;">',
        unsafe_allow_html=True,
    )


def annotated_frame(snap: PlayerSnapshot) -> np.ndarray | None:
    if snap.frame is None:
        return None
    out = snap.frame
    if snap.detection is not None:
        out = draw_detections(out, snap.detection.detections)
        out = draw_hands(out, snap.detection.hands)
    return out


def media_path(ref: str | None) -> Path | None:
    if not ref:
        return None
    p = Path(MEDIA_DIR) / ref.lstrip("/")
    return p if p.exists() else None


def start_task(task_id: str) -> None:
    task = cached_catalog()[task_id]
    cfg = load_player_config(debug=st.session_state[KEY_DEBUG])
    mode = st.session_state[KEY_REPETITION_MODE]
    interval = st.session_state[KEY_CUSTOM_INTERVAL]
    registry: SessionRegistry = st.session_state[KEY_SESSIONS]
    registry.open(
        PLAYER_VIEW_KEY,
        lambda: build_session(task, cfg, repetition_mode=mode, custom_interval=interval),
    )


def render_guidance(response: GuidanceResponse) -> None:
    st.markdown(f"**Support**  \n{response.support.emotional_support}")
    st.caption(response.support.validation)

    st.markdown("**Immediate Steps**")
    for i, s in enumerate(response.action_plan.immediate_steps, 1):
        st.markdown(f"{i}. {s}")

    age = st.session_state[KEY_AGE]
    condition = st.session_state[KEY_CONDITION]
    st.markdown(f"**Age-Specific Plan ({age} years, {CONDITION_LABELS[condition]})**")
    plan = plan_for(response, age, condition)
    if plan:
        for i, s in enumerate(plan, 1):
            st.markdown(f"{i}. {s}")
    else:
        st.caption("No specific plan for this age/condition combination")

    st.markdown("**Long-term Strategies**")
    for i, s in enumerate(response.action_plan.long_term_strategies, 1):
        st.markdown(f"{i}. {s}")

    if response.therapy_suggestions:
        st.markdown("**Therapy Suggestions**")
        for s in response.therapy_suggestions:
            st.markdown(f"- {s}")


# =============================================================================
# Session state
# =============================================================================

init_session_state()
catalog = cached_catalog()
registry: SessionRegistry = st.session_state[KEY_SESSIONS]

# =============================================================================
# Sidebar
# =============================================================================

NAV_ITEMS = ["Task Player", "Guidance", "Report"]

with st.sidebar:
    st.markdown("## 🪥 CareGuide")
    st.caption("Step-by-step routines • Parent guidance")

    st.markdown("---")
    nav = st.radio(
        "Section",
        NAV_ITEMS,
        index=NAV_ITEMS.index(st.session_state[KEY_NAV]) if st.session_state[KEY_NAV] in NAV_ITEMS else 0,
        label_visibility="collapsed",
        key="nav_radio",
    )
    st.session_state[KEY_NAV] = nav

    if nav == "Task Player":
        st.markdown("---")
        st.markdown("### Task")
        task_ids = list(catalog)
        cur = st.session_state[KEY_TASK_ID]
        st.session_state[KEY_TASK_ID] = st.selectbox(
            "Task",
            task_ids,
            index=task_ids.index(cur) if cur in task_ids else 0,
            format_func=lambda t: f"{catalog[t].title} ({t})",
            label_visibility="collapsed",
        )
        st.session_state[KEY_REPETITION_MODE] = st.radio(
            "Repeat instructions",
            [REPETITION_AI, REPETITION_FIXED],
            format_func=lambda m: "Per step" if m == REPETITION_AI else "Fixed interval",
            index=0 if st.session_state[KEY_REPETITION_MODE] == REPETITION_AI else 1,
        )
        if st.session_state[KEY_REPETITION_MODE] == REPETITION_FIXED:
            st.session_state[KEY_CUSTOM_INTERVAL] = st.number_input(
                "Interval (seconds)", min_value=5, max_value=120,
                value=int(st.session_state[KEY_CUSTOM_INTERVAL]), step=5,
            )
        volume = st.slider("Volume", 0.0, 1.0, float(st.session_state[KEY_VOLUME]), 0.1)
        if volume != st.session_state[KEY_VOLUME]:
            st.session_state[KEY_VOLUME] = volume
            live = registry.get(PLAYER_VIEW_KEY)
            if live is not None and live.active:
                live.set_volume(volume)
        with st.expander("Advanced / Dev", expanded=False):
            st.session_state[KEY_DEBUG] = st.toggle(
                "Debug panel", value=st.session_state[KEY_DEBUG],
            )

# Leaving the player view stops its camera loop
if nav != "Task Player" and registry.get(PLAYER_VIEW_KEY) is not None:
    registry.close(PLAYER_VIEW_KEY)

# =============================================================================
# TASK PLAYER
# =============================================================================


@st.fragment(run_every=timedelta(seconds=1.0))
def player_fragment():
    session = registry.get(PLAYER_VIEW_KEY)
    if session is None or not session.active:
        st.info("Choose a task in the sidebar and press **Start task**.")
        return

    snap = session.snapshot()
    clip = session.pop_audio()
    if clip:
        st.audio(clip, format="audio/mp3", autoplay=True)

    if snap.task_complete:
        st.success(f"{snap.task_title}: all {snap.step_count} steps done. Great job!")
        st.progress(1.0)
        return

    st.markdown(f"### Step {snap.step_index + 1} of {snap.step_count}")
    st.markdown(f"## {snap.step.instruction}")
    if snap.step.success_criteria:
        st.caption(f"Goal: {snap.step.success_criteria}")
    st.progress(snap.progress / 100.0, text=f"{snap.progress}%")
    st.caption(snap.status)

    col_cam, col_media = st.columns(2)
    with col_cam:
        if snap.camera_error:
            st.error(f"{snap.camera_error}. Check the camera and try again.")
            if st.button("Retry camera", key="retry_camera"):
                session.retry_camera()
        frame = annotated_frame(snap)
        if frame is not None:
            display_frame(frame)
        elif not snap.camera_error:
            st.caption("Waiting for camera...")
    with col_media:
        p = media_path(snap.step.media)
        if p is not None:
            st.video(str(p), loop=True, autoplay=True, muted=True)

    b1, b2, b3 = st.columns(3)
    with b1:
        if not snap.narration_enabled:
            if st.button("🔊 Enable voice", key="enable_voice", width="stretch"):
                session.enable_voice()
        elif st.button("Repeat instruction", key="repeat", width="stretch"):
            session.repeat_instruction()
    with b2:
        if st.button(
            "Mark as complete", key="manual_complete", width="stretch",
            disabled=snap.phase != "IN_PROGRESS",
        ):
            session.complete_manually()
    with b3:
        if snap.next_repeat_in is not None:
            st.caption(f"Next reminder in {int(snap.next_repeat_in)}s")

    if st.session_state[KEY_DEBUG]:
        with st.expander("Debug", expanded=True):
            st.caption(
                f"detector={snap.detector} · phase={snap.phase} · "
                f"attempts={snap.attempts}/{snap.max_attempts} · "
                f"camera_active={snap.camera_active} · "
                f"speaking={snap.narration_playing} · repeats={snap.repeat_count}"
            )
            st.caption(f"last evidence: {snap.evidence or '—'}")
            if snap.detection is not None:
                st.caption(
                    f"objects={len(snap.detection.detections)} "
                    f"hands={len(snap.detection.hands)} "
                    f"edges={snap.detection.edge_count}"
                )


if nav == "Task Player":
    task = catalog[st.session_state[KEY_TASK_ID]]
    st.subheader(task.title)
    if task.description:
        st.caption(task.description)

    live = registry.get(PLAYER_VIEW_KEY)
    label = "Start again" if live is not None else "Start task"
    c1, c2 = st.columns(2)
    with c1:
        if st.button(label, type="primary", width="stretch"):
            start_task(task.id)
            st.rerun()
    with c2:
        if live is not None and st.button("Stop", width="stretch"):
            registry.close(PLAYER_VIEW_KEY)
            st.rerun()

    player_fragment()

# =============================================================================
# GUIDANCE
# =============================================================================

if nav == "Guidance":
    st.subheader("Parent Guidance Chat")
    st.caption("Share your concerns about your neurodivergent child for personalized support.")

    a1, a2 = st.columns(2)
    with a1:
        st.session_state[KEY_AGE] = st.selectbox(
            "Age", AGES, index=AGES.index(st.session_state[KEY_AGE]),
            format_func=lambda a: f"{a} years",
        )
    with a2:
        st.session_state[KEY_CONDITION] = st.selectbox(
            "Condition", CONDITIONS, index=CONDITIONS.index(st.session_state[KEY_CONDITION]),
            format_func=lambda c: CONDITION_LABELS[c],
        )

    chat: GuidanceChat = st.session_state[KEY_CHAT]
    for msg in chat.messages:
        with st.chat_message("user" if msg.sender == "parent" else "assistant"):
            if isinstance(msg.content, GuidanceResponse):
                render_guidance(msg.content)
            else:
                st.markdown(msg.content)

    prompt = st.chat_input("Describe your concern...")
    if prompt:
        with st.spinner("Thinking..."):
            chat.send(prompt)
        st.rerun()

# =============================================================================
# REPORT
# =============================================================================

if nav == "Report":
    st.subheader("Task Report")
    summary = summarize_session(task_id=st.session_state[KEY_TASK_ID])

    c1, c2, c3, c4 = st.columns(4)
    with c1:
        st.metric("Steps done", summary["steps_completed"])
    with c2:
        st.metric("Seen by camera", summary["verified"])
    with c3:
        st.metric("Helped through", summary["forced"], help="Attempt cap, timeout or marked complete")
    with c4:
        st.metric("Detection errors", summary["inference_failures"])
    st.caption(
        f"Task complete: {'yes' if summary['task_complete'] else 'no'} · "
        f"Duration: {int(summary['duration_seconds'])}s · "
        f"Camera errors: {summary['camera_errors']}"
    )
    if summary["steps"]:
        header = ("Step", "Reason", "Attempts", "Progress")
        rows = [
            (str(s["step_id"]), str(s["reason"]), str(s["attempts"]), str(s["progress"]))
            for s in summary["steps"]
        ]
        st.table([header] + rows)

    st.markdown("---")
    exp1, exp2 = st.columns(2)
    with exp1:
        st.download_button(
            "Download Summary (JSON)",
            data=summary_to_json(summary),
            file_name="careguide_summary.json",
            mime="application/json",
        )
    with exp2:
        csv_data = events_to_csv()
        st.download_button(
            "Download CSV Transcript",
            data=csv_data if csv_data else "No events recorded yet.",
            file_name="careguide_transcript.csv",
            mime="text/csv",
        )

    with st.expander("Full Event Timeline", expanded=False):
        events = read_events()
        if events:
            for e in events[-50:]:
                st.caption(
                    f"{e.get('timestamp', '')} | {e.get('type', '')} | "
                    f"task={e.get('task_id', '')} | step={e.get('step_id', '')}"
                )
        else:
            st.caption("No events logged yet.")

# =============================================================================
# Footer
# =============================================================================

st.markdown("---")
st.caption(f"CareGuide • {datetime.now().strftime('%Y-%m-%d %H:%M')}")
