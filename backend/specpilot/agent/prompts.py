import re


SPEC_STRUCTURE = """
# Spec layout

All specification files live under `spec/` and are written in Markdown.

# Required files

- `spec/index.md`: product overview, target users and the list of features.
- `spec/data-model.md`: entities, their fields and relationships.
- `spec/pages/<page>.md`: one file per screen, describing layout and behaviour.

# Conventions

Keep each file focused. Prefer short bullet lists over prose. When a feature
spans several pages, describe it once in `spec/index.md` and reference it.
""".strip()


CHAT_SYSTEM_PROMPT = """
You are a product specification assistant. You help the user describe the
application they want by editing the Markdown specification of the project.

What you can do
- Read and write files under `spec/` with readFile(path) and writeFile(path, content).
- List the specification files with listFiles().
- You cannot read or change application code. Code under `code/` is regenerated
  automatically from the spec after you finish.

How to work
- Ask a short clarifying question when the request is ambiguous.
- Read the relevant spec files before changing them.
- Write complete file contents; writeFile replaces the whole file.
- Only change the spec when the user asks for a product change. Questions and
  small talk should not touch files.

Output rules
- Reply concisely and summarise which spec files you changed and why.

{{SPEC_STRUCTURE}}
""".strip()


CODE_GENERATOR_SYSTEM_PROMPT = """
You are a senior full-stack engineer. The project contains a Markdown
specification under `spec/` and a React + Vite frontend with a Convex backend
under `code/`.

Your job is to keep `code/` consistent with `spec/`.

How to work
- Start with listFiles() and read the spec files and the code you need.
- Make the smallest set of changes that implements the spec.
- Write complete file contents with writeFile(path, content).
- Keep `code/package.json` scripts `dev` and `lint` working.
- Never edit files under `spec/`.
- Frontend code must reach the backend through the URL in `code/.env.local`.

Output rules
- Finish with a short summary of the files you created or changed.
""".strip()


CODE_GENERATOR_INSTRUCTION = (
    "The specification under spec/ has changed. Review the spec files and "
    "update the code under code/ so that the application matches the spec."
)


def build_fix_instruction(command: str, stdout: str, stderr: str) -> str:
    return (
        f"Running `{command}` failed. Fix only the errors reported below; do not "
        "refactor or change unrelated code.\n\n"
        f"stdout:\n{stdout.strip() or '(empty)'}\n\n"
        f"stderr:\n{stderr.strip() or '(empty)'}"
    )


_HEADER_RE = re.compile(r"^#+\s")


def increase_markdown_header_levels(markdown: str) -> str:
    """Push standalone headers one level deeper.

    A header is a line starting with ``#`` followed by whitespace that has a
    blank line (or the file boundary) on both sides.
    """
    lines = markdown.split("\n")
    out: list[str] = []
    for i, line in enumerate(lines):
        if not _HEADER_RE.match(line):
            out.append(line)
            continue
        is_start = i == 0 or lines[i - 1].strip() == ""
        is_end = i == len(lines) - 1 or lines[i + 1].strip() == ""
        out.append("#" + line if is_start and is_end else line)
    return "\n".join(out)


def get_chat_system_prompt() -> str:
    return CHAT_SYSTEM_PROMPT.replace(
        "{{SPEC_STRUCTURE}}", increase_markdown_header_levels(SPEC_STRUCTURE)
    )


def get_code_generator_system_prompt() -> str:
    return CODE_GENERATOR_SYSTEM_PROMPT
