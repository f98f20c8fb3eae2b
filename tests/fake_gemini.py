"""Stand-in for the gemini CLI. Behaviour is picked by the last user turn of the prompt."""
import json
import sys
import time


def main(argv):
    if argv[:1] == ["--version"]:
        print("0.0.0-fake")
        return 0

    prompt = argv[0]
    model = argv[argv.index("-m") + 1]
    stream = "-o" in argv
    command = prompt.rsplit("User: ", 1)[-1].strip()

    if command.startswith("sleep"):
        time.sleep(float(command.split()[1]))
    elif command == "fail":
        sys.stderr.write("quota exceeded\n")
        return 3
    elif command == "partial":
        sys.stdout.write("a\nb\nc")
        return 0
    elif command == "noisy":
        sys.stderr.write("warning: deprecated flag\n")

    if stream:
        for word in ("hello", "world"):
            print(json.dumps({"type": "message", "content": word}), flush=True)
        print(json.dumps({"type": "result", "model": model}), flush=True)
    else:
        print(f"[{model}] {prompt}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
