CONTEXT_SECTION = """
PANEL CONTEXT:
- Description: {description}
- Characters: {characters}
- Mood: {mood}
- Camera Angle: {camera_angle}
- Narrative Context: {narrative_context}
"""

ANALYSIS_PROMPT = """You are an expert image reviewer for AI-generated comic panels. Analyze this image against its generation prompt.

GENERATION PROMPT:
"{prompt}"
{context_section}
TASK:
1. Identify which elements from the prompt are PRESENT in the image
2. Identify which elements from the prompt are MISSING or incorrectly rendered
3. Assess overall prompt adherence on a scale of 0-1
4. Note any quality issues (artifacts, anatomical errors, etc.)

Respond with a JSON object:
{{
  "adherenceScore": 0.0-1.0,
  "foundElements": ["element from the prompt that is present"],
  "missingElements": ["element from the prompt that is missing or wrong"],
  "issues": [
    {{
      "type": "missing_element" | "wrong_composition" | "wrong_character" | "wrong_action" | "quality" | "other",
      "description": "Clear description of the issue",
      "severity": "critical" | "major" | "minor",
      "suggestedFix": "Optional suggestion for fixing this in regeneration"
    }}
  ],
  "qualityNotes": "Optional notes about overall image quality"
}}

SCORING GUIDE:
- 0.9-1.0: All key elements present, excellent adherence
- 0.7-0.89: Most elements present, minor issues
- 0.5-0.69: Some elements missing or wrong, needs improvement
- 0.3-0.49: Significant issues, major regeneration needed
- 0.0-0.29: Does not match prompt at all

Be strict but fair. Focus on the key visual elements mentioned in the prompt.
Only output the JSON, no other text."""
