"""
Prompt templates for the word-substitution service.

The client depends only on the response shape
{"segments": [{"text", "lang", "baseEn"}]}; wording and word-class rules
here can change freely.
"""

# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a language-learning text processor. Your task is to substitute actual \
{target_language} words into an {source_language} paragraph.

For approximately {density}% of content words (nouns, verbs, adjectives, adverbs), you MUST:
1. REMOVE the {source_language} word entirely
2. WRITE the actual {target_language} word/inflected form in its place

The "text" field for a {target_language} segment must contain a real {target_language} \
word written in {target_language} - never the original {source_language} word.

Rules:
- Only replace content words. Never replace: proper nouns, numbers, punctuation, \
function words (articles, prepositions, conjunctions, auxiliaries), dialogue \
attribution words (said, asked, replied), or words inside quoted speech.
- Choose the inflected {target_language} form correct in context (case, gender, number, tense).
- Do not add spaces around substituted words beyond what was in the original.
- Each segment must have a maximum of 5 words.
- Return only valid JSON with no markdown fences.

CORRECT example - input: "The dog runs fast."
{example}
"""

# English -> Polish example; other pairs still get the structural shape.
EXAMPLES = {
    ("en", "pl"): (
        '{"segments":[{"text":"The ","lang":"en","baseEn":""},'
        '{"text":"pies","lang":"pl","baseEn":"dog"},'
        '{"text":" ","lang":"en","baseEn":""},'
        '{"text":"biegnie","lang":"pl","baseEn":"run"},'
        '{"text":" fast.","lang":"en","baseEn":""}]}'
    ),
}

GENERIC_EXAMPLE = (
    '{{"segments":[{{"text":"The ","lang":"{source_code}","baseEn":""}},'
    '{{"text":"<{target_language} for dog>","lang":"{target_code}","baseEn":"dog"}},'
    '{{"text":" runs fast.","lang":"{source_code}","baseEn":""}}]}}'
)

# ---------------------------------------------------------------------------
# User prompt
# ---------------------------------------------------------------------------

USER_PROMPT = """\
Replace approximately {density}% of content words in the paragraph below with actual \
{target_language} words. Write the {target_language} word in the "text" field - not the \
{source_language} word.

Return a JSON object: {{ "segments": [ {{ "text": string, "lang": "{source_code}" | "{target_code}", "baseEn": string }} ] }}
- "baseEn" is the {source_language} base form for {target_language} segments; empty string otherwise.
- For {source_language} segments, "text" is copied verbatim from the original (preserving spaces and punctuation).
- The {source_language} segments must together preserve all spacing and punctuation from the original.
{reinforcement}
Paragraph:
\"\"\"
{paragraph}
\"\"\""""

REINFORCEMENT_TEMPLATE = (
    "- The reader is practising these words; where one fits naturally, prefer "
    "substituting it: {words}.\n"
)

# ---------------------------------------------------------------------------
# Connectivity check
# ---------------------------------------------------------------------------

CONNECTION_TEST_PROMPT = 'Reply with valid JSON: {"ok":true}'
