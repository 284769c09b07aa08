import queue
import time
from typing import Any, Dict, List

import tkinter as tk
from tkinter import ttk

LEVEL_COLORS = {
    "success": "#28a745",
    "error": "#dc3545",
    "warning": "#b8860b",
    "info": "#222222",
}

HELP_TEXT = (
    'Say "read page", "read headings", "read links", "navigate to <link>", '
    '"click <button>", "stop reading", "pause reading", "resume reading", '
    '"scroll down", "scroll up", "go back", "summarize page" or "help".'
)


def run_ui(command_queue: Any, status_queue: Any, log_queue: Any) -> None:
    root = tk.Tk()
    root.title("Voice Navigator")
    root.geometry("440x420")
    root.attributes("-topmost", True)
    root.resizable(True, True)

    voice_uris: List[str] = [""]
    clear_status_job: List[Any] = [None]

    def send(message: Dict[str, Any]) -> None:
        command_queue.put(message)

    tk.Label(root, text="Status:").pack(anchor="w", padx=8, pady=(8, 0))
    status_label = tk.Label(root, text="Starting...", wraplength=400, justify="left")
    status_label.pack(anchor="w", padx=8)

    control_row = tk.Frame(root)
    control_row.pack(fill="x", padx=8, pady=(8, 0))
    toggle_button = tk.Button(control_row, text="Start Listening", width=14)
    toggle_button.pack(side="left")

    def toggle_listening() -> None:
        if toggle_button.cget("text") == "Start Listening":
            send({"action": "start"})
        else:
            send({"action": "stop"})

    toggle_button.configure(command=toggle_listening)

    highlight_var = tk.BooleanVar(value=True)

    def apply_highlight() -> None:
        send({"action": "updateSettings", "settings": {"highlightElements": bool(highlight_var.get())}})

    tk.Checkbutton(control_row, text="Highlight", variable=highlight_var, command=apply_highlight).pack(
        side="left", padx=(8, 0)
    )

    tk.Label(root, text="Speech rate:").pack(anchor="w", padx=8, pady=(8, 0))
    rate_scale = tk.Scale(root, from_=0.5, to=2.0, resolution=0.1, orient="horizontal")
    rate_scale.set(1.0)
    rate_scale.pack(fill="x", padx=8)

    def apply_rate(_evt: Any = None) -> None:
        send({"action": "updateSettings", "settings": {"speechRate": float(rate_scale.get())}})

    rate_scale.bind("<ButtonRelease-1>", apply_rate)

    tk.Label(root, text="Voice:").pack(anchor="w", padx=8, pady=(8, 0))
    voice_combo = ttk.Combobox(root, values=["Default Voice"], state="readonly")
    voice_combo.current(0)
    voice_combo.pack(fill="x", padx=8)

    def apply_voice(_evt: Any = None) -> None:
        index = voice_combo.current()
        uri = voice_uris[index] if 0 <= index < len(voice_uris) else ""
        send({"action": "updateSettings", "settings": {"voiceURI": uri}})

    voice_combo.bind("<<ComboboxSelected>>", apply_voice)

    prompt_entry = tk.Entry(root)
    prompt_entry.pack(fill="x", padx=8, pady=(8, 0))

    button_row = tk.Frame(root)
    button_row.pack(fill="x", padx=8, pady=8)

    def send_text() -> None:
        text = prompt_entry.get().strip()
        if not text:
            return
        send({"action": "submitTranscript", "text": text})
        prompt_entry.delete(0, "end")

    def stop_speech() -> None:
        send({"action": "submitTranscript", "text": "stop reading"})

    help_label = tk.Label(root, text=HELP_TEXT, wraplength=400, justify="left")

    def toggle_help() -> None:
        if help_label.winfo_ismapped():
            help_label.pack_forget()
        else:
            help_label.pack(anchor="w", padx=8, before=log_header)

    def request_quit() -> None:
        send({"action": "quit"})
        try:
            root.destroy()
        except Exception:
            pass

    tk.Button(button_row, text="Send", command=send_text, width=8).pack(side="left")
    tk.Button(button_row, text="Stop Voice", command=stop_speech, width=10).pack(side="left", padx=(6, 0))
    tk.Button(button_row, text="Help", command=toggle_help, width=6).pack(side="left", padx=(6, 0))
    tk.Button(button_row, text="Quit", command=request_quit, width=8).pack(side="right")

    log_header = tk.Label(root, text="Log:")
    log_header.pack(anchor="w", padx=8)
    log_frame = tk.Frame(root)
    log_frame.pack(fill="both", expand=True, padx=8, pady=(0, 8))
    log_text = tk.Text(log_frame, height=8, wrap="word", state="disabled")
    log_scroll = tk.Scrollbar(log_frame, command=log_text.yview)
    log_text.configure(yscrollcommand=log_scroll.set)
    log_text.pack(side="left", fill="both", expand=True)
    log_scroll.pack(side="right", fill="y")

    prompt_entry.bind("<Return>", lambda _evt: send_text())

    def append_log_line(line: str) -> None:
        timestamp = time.strftime("%H:%M:%S")
        log_text.configure(state="normal")
        log_text.insert("end", f"[{timestamp}] {line}\n")
        log_text.see("end")
        if int(float(log_text.index("end-1c").split(".")[0])) > 300:
            log_text.delete("1.0", "50.0")
        log_text.configure(state="disabled")

    def show_status(message: str, level: str, duration: int) -> None:
        status_label.configure(text=message, fg=LEVEL_COLORS.get(level, LEVEL_COLORS["info"]))
        if clear_status_job[0] is not None:
            root.after_cancel(clear_status_job[0])
        clear_status_job[0] = root.after(max(500, duration), lambda: status_label.configure(fg=LEVEL_COLORS["info"]))

    def apply_listening(is_listening: bool) -> None:
        toggle_button.configure(text="Stop Listening" if is_listening else "Start Listening")

    def apply_voices(voices: List[Dict[str, str]]) -> None:
        if not voices:
            voice_combo.configure(values=["Voices could not be loaded"], state="disabled")
            voice_combo.current(0)
            return
        voice_uris[:] = [""] + [str(v.get("uri", "")) for v in voices]
        labels = ["Default Voice"] + [f"{v.get('name', '')} ({v.get('lang', '')})" for v in voices]
        voice_combo.configure(values=labels, state="readonly")
        voice_combo.current(0)

    def apply_response(payload: Dict[str, Any]) -> None:
        if "isListening" in payload:
            apply_listening(bool(payload["isListening"]))
        if "voices" in payload:
            apply_voices(list(payload["voices"]))
        settings = payload.get("settings")
        if isinstance(settings, dict):
            rate_scale.set(float(settings.get("speechRate", rate_scale.get())))
            highlight_var.set(bool(settings.get("highlightElements", highlight_var.get())))

    def poll_queues() -> None:
        while True:
            try:
                payload = status_queue.get_nowait()
            except queue.Empty:
                break
            if not isinstance(payload, dict):
                continue
            event_type = payload.get("type")
            if event_type == "shutdown":
                try:
                    root.destroy()
                except Exception:
                    pass
                return
            if event_type == "status":
                show_status(str(payload.get("value", "")), str(payload.get("level", "info")), int(payload.get("duration", 3000)))
            elif event_type == "response" and isinstance(payload.get("payload"), dict):
                apply_response(payload["payload"])
        while True:
            try:
                payload = log_queue.get_nowait()
            except queue.Empty:
                break
            if isinstance(payload, dict) and payload.get("type") == "log":
                append_log_line(str(payload.get("value", "")))
        root.after(120, poll_queues)

    root.protocol("WM_DELETE_WINDOW", request_quit)
    send({"action": "getStatus"})
    send({"action": "getVoices"})
    poll_queues()
    prompt_entry.focus_set()
    root.mainloop()
