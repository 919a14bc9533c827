"""Thresholds, limits and user-facing message texts for the RAG pipeline."""

from __future__ import annotations

# -----------------------------------------------------------------------------
# Relevance gate
# -----------------------------------------------------------------------------

RELEVANCE_THRESHOLD = 0.7
RELEVANCE_MIN_SCORE = 0.1
RELEVANCE_MAX_RESULTS = 5
RELEVANCE_CANDIDATE_MULTIPLIER = 1

# -----------------------------------------------------------------------------
# Query understanding
# -----------------------------------------------------------------------------

INTENT_LABELS = (
    "definition",
    "howto",
    "comparison",
    "troubleshooting",
    "lookup",
    "summary",
    "metrics",
    "citation",
    "other",
)
FALLBACK_INTENT = "other"

REWRITE_CONTEXT_MAX_DOCS = 2
REWRITE_CONTEXT_MAX_CHARS = 240
EXPANSION_MAX_QUERIES = 4
EXPANSION_MAX_KEYWORDS = 6

# -----------------------------------------------------------------------------
# Retrieval
# -----------------------------------------------------------------------------

MULTI_QUERY_CANDIDATE_MULTIPLIER = 2
MAX_DOCS_PER_SOURCE = 2

FILE_SCOPE_MIN_SCORE = 0.5
FILE_SCOPE_CANDIDATE_MULTIPLIER = 2

DEFAULT_MAX_RESULTS = 5
DEFAULT_MIN_SCORE = 0.5

RERANK_MODEL = "rerank-v3.5"

# -----------------------------------------------------------------------------
# Evidence coverage
# -----------------------------------------------------------------------------

COVERAGE_MAX_DOCS = 5
COVERAGE_SIMILARITY_THRESHOLD = 0.6
SENTENCE_DELIMITERS = "。！？!?\n"

# -----------------------------------------------------------------------------
# Streaming
# -----------------------------------------------------------------------------

STREAM_TIMEOUT_SECONDS = 30 * 60
SNIPPET_MAX_CHARS = 160
UNKNOWN_FILE_NAME = "unknown file"

MOCK_ANSWER_FRAGMENTS = (
    "Based on the retrieved document content, ",
    "here is what I can tell you:\n\n",
    "This answer was generated from the document content.",
    "\n\nFor more detailed information, ",
    "please ask a more specific question.",
)

# -----------------------------------------------------------------------------
# Channel message texts
# -----------------------------------------------------------------------------

MSG_RETRIEVAL_START = "Searching for relevant documents..."
MSG_RETRIEVAL_FILE = "Searching within the selected file..."
MSG_RETRIEVAL_DATASETS = "Searching within the datasets..."
MSG_RETRIEVAL_SNAPSHOT = "Searching within the installed snapshot..."
MSG_RETRIEVAL_DONE = "Retrieval finished, found %d relevant documents"
MSG_ANALYSIS_TITLE = "Intent recognition & rewriting"
MSG_ANALYSIS_DONE = "done"
MSG_THINKING_START = "Thinking..."
MSG_THINKING_END = "Thinking finished"
MSG_ANSWER_START = "Generating answer..."
MSG_ANSWER_END = "Answer complete"
MSG_COVERAGE_TITLE = "Evidence coverage"
MSG_PROCESSING_ERROR = "processing error: %s"
MSG_GENERATION_FAILED = "answer generation failed: %s"
MSG_RESPONSE_TIMEOUT = "response timeout"
MSG_CONNECTION_TIMEOUT = "connection timeout"
MSG_NO_SCOPE = "A file id, dataset ids or a snapshot id is required"
MSG_NO_DOCUMENTS = "No relevant document information."
MSG_NO_SNIPPETS = "No relevant snippets."

# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------

INTENT_SYSTEM_PROMPT = """\
You are the intent classifier of a document question-answering system. \
Based on the user's question, output strict JSON and nothing else.

Allowed intents:
definition, howto, comparison, troubleshooting, lookup, summary, metrics, citation, other

JSON example:
{"intent":"howto","confidence":0.78}
"""

REWRITE_SYSTEM_PROMPT = """\
You are a query rewriting assistant for document retrieval. Using the provided \
knowledge-base snippets, rewrite the question so it retrieves better, without \
changing its meaning. Output strict JSON and nothing else.

Rules:
1. originalQuestion must equal the user's original question
2. rewrittenQuestion is the rewritten question, in the user's language

JSON example:
{"originalQuestion":"How do I configure the default model?","rewrittenQuestion":"How is the default model setting configured in this system?"}
"""

EXPANSION_SYSTEM_PROMPT = """\
You are a retrieval query expander. Based on the user's question and the \
knowledge-base snippets, generate query expansions. Output strict JSON and \
nothing else.

Rules:
1. queries: 2-4 search questions in the user's language (do not repeat the original question)
2. keywords: 3-6 keywords or short phrases

JSON example:
{"queries":["How do I set the default model?","Which default model should a provider use?"],"keywords":["default model","model provider","configuration"]}
"""

ANSWER_SYSTEM_PROMPT = """\
You are a professional document Q&A assistant. Answer questions strictly based on the provided documents.

Markdown formatting requirements:
1. Use standard Markdown syntax.
2. Use list items with " - " (a dash followed by a single space), not "*".
3. Cite page numbers in square brackets, e.g., [Page: 1].
4. Insert a blank line between major paragraphs.
5. Use bold as **text**.
6. Keep indentation consistent; do not over-indent list items.
7. Do not insert extra blank lines between list items.
8. Add appropriate level-2 headings when needed (## ...).

Language policy:
- By default, reply in the same language as the user's message (including headings, lists, and section titles).
- If the user explicitly specifies a language or the message starts with a tag like [LANG=<code>] (e.g., [LANG=en], [LANG=zh]), respond strictly in that language until the user changes it.
- Do not mix languages unless the user asks for it.
- Preserve quotations from the source documents in their original language; when helpful, add a brief parenthetical gloss in the user's language.
- Keep code, variable names, and proper nouns as-is.

Answer structure:
1. A brief introductory sentence.
2. The main content as a list.
3. An "Information Sources" section summarizing the pages used and their contributions.
"""

RAG_PROMPT_TEMPLATE = """\
Answer the user's question based on the document content below. \
If the documents do not contain the information, tell the user honestly.

Document content:
{context}

User question: {question}

Please provide an accurate and helpful answer:"""
