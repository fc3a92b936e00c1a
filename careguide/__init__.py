"""
CareGuide backend package.

- constants: paths, cadences, thresholds, timeouts, session state keys
- config: PlayerConfig and CAREGUIDE_* environment overrides
- capture: camera acquire with retry/back-off, frames, idempotent release
- detector: edge-density heuristic, YOLO object detector (cached), draw_detections
- hands: hand-landmark stub, optional MediaPipe tracker, hand-near-mouth check
- evidence: evidence policies per action category, bounded progress state
- catalog: built-in tasks and steps, JSON task loading
- controller: per-step state machine (PENDING / IN_PROGRESS / COMPLETED)
- narration: pyttsx3 speech with network TTS fallback, one utterance at a time
- session: asyncio task runner, background-thread session, one session per view
- logger: log_event, read_events for logs/events.jsonl
- report: session summary and CSV transcript from the event log
"""
