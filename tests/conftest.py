"""Shared fixtures: a scripted stand-in for the agent CLI."""

from __future__ import annotations

import stat
import sys

import pytest

from agentorchestrator.infra.agents.claude_code import ClaudeCodeBackend
from agentorchestrator.infra.transport import TransportSettings

# Speaks the agent's line-JSON protocol. FAKE_AGENT_MODE selects a behavior:
# normal, hang (never finishes the turn), crash (exits without a result),
# noise (writes junk lines before the real output), noinit (never announces a
# session id), stubborn (like hang, but ignores SIGTERM). A turn whose prompt is
# "hang" hangs in any mode.
FAKE_AGENT = '''#!{python}
import json
import os
import signal
import sys
import time

args = sys.argv[1:]
mode = os.environ.get("FAKE_AGENT_MODE", "normal")
if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)


def arg_value(flag):
    if flag in args:
        return args[args.index(flag) + 1]
    return None


resumed = arg_value("--resume")
session_id = resumed or "agent-%d" % os.getpid()


def emit(doc):
    sys.stdout.write(json.dumps(doc) + "\\n")
    sys.stdout.flush()


def turn(prompt):
    if mode == "noise":
        sys.stdout.write("\\n")
        sys.stdout.write("this is not json\\n")
        emit({{"type": "mystery", "session_id": session_id}})
        emit({{"type": ["assistant"], "session_id": session_id}})
        emit({{"type": "assistant", "message": "not an object"}})
    if mode != "noinit":
        emit({{"type": "system", "subtype": "init", "session_id": session_id,
              "cwd": os.getcwd(), "tools": ["Bash", "Read"], "model": "fake-model"}})
    if mode == "crash":
        sys.stderr.write("fake agent crashed\\n")
        sys.stderr.flush()
        sys.exit(3)
    text = "echo: " + prompt
    if resumed:
        text += " (resumed " + resumed + ")"
    emit({{"type": "assistant", "session_id": session_id, "uuid": "a-1",
          "message": {{"id": "msg_1", "model": "fake-model",
                      "content": [{{"type": "text", "text": text}}]}}}})
    if mode in ("hang", "stubborn") or prompt == "hang":
        time.sleep(60)
    emit({{"type": "result", "subtype": "success", "is_error": False,
          "session_id": session_id, "num_turns": 1, "result": text,
          "total_cost_usd": 0.25, "duration_ms": 5}})


def block_text(block):
    if block.get("type") == "text":
        return block["text"]
    return "[" + block.get("type", "?") + "]"


if "--print" in args:
    if mode == "crash":
        sys.exit(2)
    print("answer: " + args[-1])
elif "-p" in args:
    turn(arg_value("-p"))
else:
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        doc = json.loads(line)
        if doc.get("type") != "user":
            emit({{"type": "system", "subtype": "command_ack",
                  "session_id": session_id, "command": doc}})
            continue
        content = doc["message"]["content"]
        if isinstance(content, list):
            content = " ".join(block_text(b) for b in content)
        turn(content)
'''


@pytest.fixture
def fake_agent(tmp_path):
    """Path to an executable fake agent script."""
    path = tmp_path / "fake-agent"
    path.write_text(FAKE_AGENT.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_backend(fake_agent):
    return ClaudeCodeBackend(executable=str(fake_agent))


@pytest.fixture
def fast_settings():
    return TransportSettings(shutdown_grace=2.0)
