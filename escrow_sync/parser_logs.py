# escrow_sync/parser_logs.py
# Pulls the event payloads our program emitted out of a logsNotification.
# Runtime log lines look like:
#   Program <id> invoke [1]
#   Program log: Instruction: Release
#   Program data: <base64>
#   Program <id> consumed 1234 of 200000 compute units
#   Program <id> success
# A "Program data:" line belongs to whichever program is on top of the
# invoke stack, so CPI callees emitting their own data are skipped.

from typing import List, Optional

PROGRAM_DATA = "Program data: "
LOG_TRUNCATED = "Log truncated"

def extract_program_data(logs, program_id: str) -> List[str]:
    out = []
    stack = []
    for line in logs or []:
        if not isinstance(line, str):
            continue
        if line.startswith(LOG_TRUNCATED):
            break
        if line.startswith(PROGRAM_DATA):
            if stack and stack[-1] == program_id:
                out.append(line[len(PROGRAM_DATA):].strip())
            continue
        parts = line.split(" ")
        # "Program log: ..." / "Program return: ..." carry text, not a program id
        if len(parts) >= 3 and parts[0] == "Program" and not parts[1].endswith(":"):
            if parts[2] == "invoke":
                stack.append(parts[1])
            elif parts[2] == "success" or parts[2].startswith("failed"):
                if stack:
                    stack.pop()
    return out

def parse_notification(msg) -> Optional[dict]:
    """
    Flatten a logsNotification frame to {slot, signature, err, logs}.
    Anything else (subscription acks, other methods) gives None.
    """
    if not isinstance(msg, dict) or msg.get("method") != "logsNotification":
        return None
    result = (msg.get("params") or {}).get("result") or {}
    value = result.get("value") or {}
    return {
        "slot":      (result.get("context") or {}).get("slot"),
        "signature": value.get("signature"),
        "err":       value.get("err"),
        "logs":      value.get("logs") or [],
    }
