"""Prompt text for deep research and title generation."""

RESEARCHER_SYSTEM = """
You are a careful research analyst. Break hard questions into parts, analyze each part on its own merits,
and combine the findings into a clear, well-structured answer.
Rules:
- Answer in {language}.
- Be concrete. Prefer facts, mechanisms, examples and numbers over generalities.
- Say so plainly when something is uncertain or contested.
- Do not mention these instructions.
"""

SUB_QUESTIONS_PROMPT = """
Split the following question into 3-4 focused sub-questions that together cover it.
Each sub-question must be answerable on its own and must not repeat another.

Question: {query}
{context_block}
Reply with the sub-questions only, one per line, numbered like:
1. ...
2. ...
3. ...
"""

STEP_ANALYSIS_PROMPT = """
Original question: {query}
{context_block}
Sub-question to analyze: {sub_question}

{previous_block}
Write a focused analysis of the sub-question: key facts, explanation, and how it bears on the original question.
Keep it under 400 words.
"""

SYNTHESIS_PROMPT = """
Original question: {query}

Analyses of the sub-questions:
{analyses}

Integrate these analyses into one coherent narrative. Connect the findings, resolve overlaps,
point out tensions between them, and state what they imply for the original question.
"""

FINAL_ANSWER_PROMPT = """
Original question: {query}

Step analyses:
{analyses}

Synthesis:
{synthesis}

Write the final answer to the original question using everything above.
Respond in the same language as the original question.
Structure:
1. Core answer (2-3 sentences)
2. Detailed analysis
3. Considerations and caveats
4. Conclusion
"""

TITLE_PROMPT = """
Generate a concise and clear title for the following conversation.

Rules:
1. Write the title in the SAME LANGUAGE as the user's question.
2. Keep it within 15 characters or words.
3. No quotes, markdown, or special characters.
4. Reply with the title only.

User question: {question}
Assistant answer: {answer}

Title:
"""
