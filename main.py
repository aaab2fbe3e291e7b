from __future__ import annotations
import argparse
import logging
import os
import sys
import time
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
load_dotenv()

# -----------------------------
# Config defaults
# -----------------------------
DEFAULT_BASE_URL = os.getenv("POEMS_SERVER_URL", "http://127.0.0.1:8000")
POLL_INTERVAL = 0.3

# -----------------------------
# Simple HTTP client helpers
# -----------------------------
def _request(method: str, base_url: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
    url = f"{base_url.rstrip('/')}{path}"
    r = requests.request(method, url, json=payload, timeout=120)
    if r.status_code >= 400:
        print(f"\n[CLIENT] HTTP {r.status_code} from {url}")
        try:
            print("[CLIENT] Body:", r.json())
        except ValueError:
            print("[CLIENT] Body:", r.text[:1000])
        r.raise_for_status()
    return r.json()

def _get(base_url: str, path: str) -> Any:
    return _request("GET", base_url, path)

def _post(base_url: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
    return _request("POST", base_url, path, payload)

def _put(base_url: str, path: str, payload: Dict[str, Any]) -> Any:
    return _request("PUT", base_url, path, payload)

# -----------------------------
# API wrappers
# -----------------------------
def get_poem(base_url: str, poem_id: int) -> Dict[str, Any]:
    return _get(base_url, f"/v1/poems/{poem_id}")

def get_dictation(base_url: str, poem_id: int) -> Dict[str, Any]:
    return _get(base_url, f"/v1/poems/{poem_id}/dictation")

def generate_questions(base_url: str, poem_id: int, count: int) -> Dict[str, Any]:
    return _post(base_url, f"/v1/poems/{poem_id}/dictation/generate", {"count": count})

def submit_answer(base_url: str, poem_id: int, index: int, text: str) -> Dict[str, Any]:
    _put(base_url, f"/v1/poems/{poem_id}/dictation/{index}/input", {"text": text})
    return _post(base_url, f"/v1/poems/{poem_id}/dictation/{index}/check")

def send_chat(base_url: str, poem_id: int, text: str) -> Dict[str, Any]:
    return _post(base_url, f"/v1/poems/{poem_id}/chat", {"text": text})

def get_chat(base_url: str, poem_id: int) -> Dict[str, Any]:
    return _get(base_url, f"/v1/poems/{poem_id}/chat")

def stop_chat(base_url: str, poem_id: int) -> Dict[str, Any]:
    return _post(base_url, f"/v1/poems/{poem_id}/chat/stop")

# -----------------------------
# Pretty printers
# -----------------------------
def print_poem(poem: Dict[str, Any]) -> None:
    print(f"\n《{poem['title']}》 {poem['author']}")
    for line in poem.get("content", []):
        print(f"  {line}")

def print_result(result: Dict[str, Any], answer: str, explanation: str) -> None:
    kind = result.get("kind")
    if kind == "correct":
        print("✅ 完全正确")
    elif kind == "typos":
        print(f"⚠️  有错字：{result['wrong_count']} / {result['total']}")
        print(f"   标准答案：{answer}")
    else:
        print("❌ 整句错误")
        print(f"   标准答案：{answer}")
    if explanation:
        print(f"   解析：{explanation}")

def _last_reply(chat: Dict[str, Any]) -> str:
    turns: List[Dict[str, Any]] = chat.get("turns", [])
    if not turns or not turns[-1].get("assistant"):
        return ""
    return turns[-1]["assistant"]["content"]

# -----------------------------
# Interactive dictation
# -----------------------------
def interactive_quiz(base_url: str, poem_id: int, count: int, regenerate: bool) -> None:
    print_poem(get_poem(base_url, poem_id))

    state = get_dictation(base_url, poem_id)
    if regenerate or not state["questions"]:
        print(f"\n⏳ 正在生成 {count} 道默写题 ...")
        state = generate_questions(base_url, poem_id, count)
        if state.get("error"):
            print(f"❌ {state['error']}")
        if not state["questions"]:
            sys.exit(1)

    for q in state["questions"]:
        print(f"\n--- 第 {q['index'] + 1} 题 ---")
        print(q["prompt"])
        print(f"  {q['blank']}")
        text = input("你的答案: ").strip()
        result = submit_answer(base_url, poem_id, q["index"], text)
        print_result(result, q["answer"], q["explanation"])

# -----------------------------
# One-shot chat
# -----------------------------
def ask(base_url: str, poem_id: int, question: str, timeout: float = 120.0) -> None:
    send_chat(base_url, poem_id, question)
    printed = 0
    deadline = time.monotonic() + timeout
    try:
        while True:
            chat = get_chat(base_url, poem_id)
            reply = _last_reply(chat)
            if len(reply) > printed:
                print(reply[printed:], end="", flush=True)
                printed = len(reply)
            if not chat["is_streaming"]:
                break
            if time.monotonic() > deadline:
                stop_chat(base_url, poem_id)
                print("\n⚠️  Timed out; stream stopped.")
                break
            time.sleep(POLL_INTERVAL)
    except KeyboardInterrupt:
        stop_chat(base_url, poem_id)
        print("\n⏹  Stopped.")
    print()

# -----------------------------
# Run server (programmatically)
# -----------------------------
def run_server(port: int, host: str = "127.0.0.1", reload: bool = True) -> None:
    try:
        import uvicorn
    except ImportError:
        print("❌ uvicorn not installed. Run: pip install -e .")
        sys.exit(1)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("api:app", host=host, port=port, reload=reload)

# -----------------------------
# Health checker
# -----------------------------
def health_check(base_url: str) -> None:
    print(f"🔎 Checking server at {base_url} ...")
    try:
        r = requests.get(f"{base_url.rstrip('/')}/docs", timeout=10)
        r.raise_for_status()
        print("✅ /docs reachable")

        _get(base_url, "/v1/poems")
        print("✅ JSON API ok")
    except requests.RequestException as e:
        print(f"❌ Health check failed: {e}")
        sys.exit(1)

# -----------------------------
# CLI
# -----------------------------
def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Poem study: AI dictation and Q&A, server + client in one file")

    sub = p.add_subparsers(dest="cmd", required=True)

    ps = sub.add_parser("serve", help="Start the FastAPI server (uvicorn)")
    ps.add_argument("--port", type=int, default=8000, help="Port to bind")
    ps.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind")
    ps.add_argument("--no-reload", action="store_true", help="Disable auto-reload")

    pq = sub.add_parser("quiz", help="Answer dictation questions for a poem")
    pq.add_argument("--poem", type=int, required=True, help="Poem id")
    pq.add_argument("--count", type=int, default=3, help="Questions to generate")
    pq.add_argument("--regenerate", action="store_true", help="Generate a fresh set even if one is saved")
    pq.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")

    pc = sub.add_parser("chat", help="Ask one question about a poem and stream the answer")
    pc.add_argument("--poem", type=int, required=True, help="Poem id")
    pc.add_argument("--question", type=str, required=True, help="Question to ask")
    pc.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")

    ph = sub.add_parser("health", help="Check server availability")
    ph.add_argument("--base-url", type=str, default=DEFAULT_BASE_URL, help="API base URL")

    return p.parse_args()

def _require_server(base_url: str) -> None:
    try:
        requests.get(f"{base_url.rstrip('/')}/docs", timeout=5).raise_for_status()
    except requests.RequestException:
        print("⚠️  Could not reach the server. Is it running?\n"
              "    Start it in another terminal:\n"
              "    python main.py serve")
        sys.exit(1)

def main() -> None:
    args = parse_args()

    if args.cmd == "serve":
        run_server(port=args.port, host=args.host, reload=(not args.no_reload))
        return

    if args.cmd == "quiz":
        _require_server(args.base_url)
        interactive_quiz(args.base_url, args.poem, args.count, args.regenerate)
        return

    if args.cmd == "chat":
        _require_server(args.base_url)
        ask(args.base_url, args.poem, args.question)
        return

    if args.cmd == "health":
        health_check(args.base_url)
        return

    print("Unknown command. Try: python main.py --help")
    sys.exit(2)

if __name__ == "__main__":
    main()
