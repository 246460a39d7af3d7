SUMMARIZE_PROMPT = """You are continuing an active coding session.
Create a state handoff for seamless continuation. Be terse.

## Required Sections:

### Active Objective
What is the user trying to accomplish RIGHT NOW?

### Changes So Far
Files touched and patches applied, reverted or discarded.

### Open Loops
- Failing hunks, denied tools, unanswered questions

### Next Actions
Ordered checklist of what should happen next (3-8 items)

## Rules:
- Keep file paths, function names and error messages verbatim
- Focus on CONTINUING work, not documenting history
- State, not story."""

HANDOFF_PREFIX = "[Session State Handoff]"
