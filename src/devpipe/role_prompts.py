from __future__ import annotations

from dataclasses import dataclass, field
import json
import re
from typing import Any

from devpipe.domain.models import Role

_FENCE_RE = re.compile(r'```(?:json)?\s*(\{.*?\})\s*```', re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class RolePrompt:
    system: str
    tools: tuple[str, ...]
    output_schema: dict[str, Any]


@dataclass(frozen=True)
class ParseResult:
    success: bool
    data: Any = None
    error: str | None = None
    raw: str = ''
    logs: list[str] = field(default_factory=list)


ARCHITECT_SCHEMA: dict[str, Any] = {
    'discoveries': [
        {
            'type': 'pattern|dependency|risk|constraint|integration_point|performance_consideration',
            'title': 'Discovery title',
            'description': 'What was discovered',
            'impact': 'low|medium|high|critical',
        }
    ],
    'decisions': [
        {
            'title': 'Decision title',
            'context': 'Why this decision is needed',
            'decision': 'What was decided',
            'consequences': 'Impact of this decision',
            'alternatives': ['Alternative that was rejected'],
        }
    ],
    'userStories': [
        {
            'title': 'User story title',
            'description': 'As a [role], I want [feature] so that [benefit]',
            'acceptanceCriteria': ['Given [context], when [action], then [outcome]'],
        }
    ],
    'design': {
        'overview': 'High-level design description',
        'components': [{'name': 'ComponentName', 'responsibilities': ['responsibility']}],
        'dependencies': ['dependency'],
    },
}

DEVELOPER_SCHEMA: dict[str, Any] = {
    'filesCreated': ['path/to/new_file.py'],
    'filesModified': ['path/to/changed_file.py'],
    'testsAdded': ['tests/test_new_behaviour.py'],
    'implementation': {
        'summary': 'What was implemented',
        'details': 'Notable implementation details',
    },
    'nextSteps': ['Follow-up work, if any'],
}

REVIEWER_SCHEMA: dict[str, Any] = {
    'approved': True,
    'issues': [
        {
            'severity': 'low|medium|high|critical',
            'file': 'path/to/file.py',
            'description': 'What is wrong',
        }
    ],
    'suggestions': ['Concrete improvement'],
    'summary': 'Overall assessment',
}

ROLE_PROMPTS: dict[Role, RolePrompt] = {
    Role.ARCHITECT: RolePrompt(
        system=(
            'You are the technical architect of an automated development pipeline.\n'
            'Design a maintainable architecture for the requested feature.\n\n'
            'INSTRUCTIONS:\n'
            '1. Analyze the feature requirements.\n'
            '2. Record technical discoveries (risks, constraints, integration points).\n'
            '3. Make architecture decisions and state their rationale.\n'
            '4. Break the work into user stories with acceptance criteria.\n'
            '5. Describe the design: components, responsibilities and dependencies.'
        ),
        tools=('Read', 'Write', 'Grep', 'WebSearch'),
        output_schema=ARCHITECT_SCHEMA,
    ),
    Role.DEVELOPER: RolePrompt(
        system=(
            'You are a developer in an automated development pipeline.\n'
            'Implement the task on top of the architecture you are given.\n\n'
            'INSTRUCTIONS:\n'
            '1. Review the architecture, decisions and user story.\n'
            '2. Write tests for the new behaviour first.\n'
            '3. Implement the code until the tests pass.\n'
            '4. Keep changes focused and handle errors explicitly.\n'
            '5. Report every file you created or modified.'
        ),
        tools=('Read', 'Write', 'Edit', 'Bash', 'Grep', 'WebSearch'),
        output_schema=DEVELOPER_SCHEMA,
    ),
    Role.REVIEWER: RolePrompt(
        system=(
            'You are a code reviewer in an automated development pipeline.\n'
            'Review the implementation for correctness, security and test coverage.\n\n'
            'INSTRUCTIONS:\n'
            '1. Compare the implementation against the requirements.\n'
            '2. Look for security problems and unhandled errors.\n'
            '3. Check that the tests cover the new behaviour.\n'
            '4. List issues by severity and suggest specific fixes.\n'
            '5. Approve only when no blocking issue remains.'
        ),
        tools=('Read', 'Grep', 'WebSearch'),
        output_schema=REVIEWER_SCHEMA,
    ),
}


def role_tools(role: Role | str) -> tuple[str, ...]:
    return ROLE_PROMPTS[Role(role)].tools


def output_format_section(role: Role | str) -> str:
    schema = ROLE_PROMPTS[Role(role)].output_schema
    return (
        'OUTPUT FORMAT:\n'
        'Respond with a single valid JSON object using this structure '
        '(a ```json fenced block is accepted):\n'
        + json.dumps(schema, indent=2)
    )


def build_prompt(
    role: Role | str,
    description: str,
    context: list[str] | None = None,
    custom_instructions: str | None = None,
) -> str:
    """Assemble the instruction text for one role.

    Sections always appear in this order: role system text, additional
    instructions, task, context, output format. Empty optional sections
    are omitted.
    """
    template = ROLE_PROMPTS[Role(role)]
    sections = [template.system]
    if custom_instructions and custom_instructions.strip():
        sections.append(f'ADDITIONAL INSTRUCTIONS:\n{custom_instructions.strip()}')
    sections.append(f'TASK:\n{description}')
    entries = [str(item) for item in (context or []) if str(item).strip()]
    if entries:
        sections.append('CONTEXT:\n' + '\n\n'.join(entries))
    sections.append(output_format_section(role))
    return '\n\n'.join(sections)


def extract_balanced_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring, honouring JSON strings."""
    start = text.find('{')
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == '\\':
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        start = text.find('{', start + 1)
    return None


def _json_candidates(text: str) -> list[str]:
    candidates = [text]
    for match in _FENCE_RE.finditer(text):
        payload = str(match.group(1) or '').strip()
        if payload:
            candidates.append(payload)
    balanced = extract_balanced_object(text)
    if balanced:
        candidates.append(balanced)
    out: list[str] = []
    for item in candidates:
        if item not in out:
            out.append(item)
    return out


def parse_output(role: Role | str, raw_text: str) -> ParseResult:
    Role(role)
    text = str(raw_text or '').strip()
    if not text:
        return ParseResult(success=False, error='Failed to parse JSON output: empty output', raw=str(raw_text or ''))

    last_error = 'no JSON object found'
    for candidate in _json_candidates(text):
        try:
            data = json.loads(candidate)
        except ValueError as exc:
            last_error = str(exc)
            continue
        if not isinstance(data, dict):
            last_error = f'expected a JSON object, got {type(data).__name__}'
            continue
        return ParseResult(success=True, data=data, raw=text)

    return ParseResult(
        success=False,
        error=f'Failed to parse JSON output: {last_error}',
        raw=text,
        logs=[text],
    )
