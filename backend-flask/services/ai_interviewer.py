"""
Gemini-backed interviewer: question generation, answer grading, follow-ups
and the end-of-interview summary.

Every model call degrades to a deterministic fallback so an interview can
always proceed when the model is unavailable or returns malformed JSON.
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from utils import clamp, to_float_maybe

logger = logging.getLogger("interviews")

QUESTION_TYPES = {"technical", "behavioral", "situational", "coding", "system_design"}
QUESTION_DIFFICULTIES = {"easy", "medium", "hard"}
RECOMMENDATIONS = {"strong_hire", "hire", "no_hire", "strong_no_hire"}

DEFAULT_FOLLOW_UP = "Can you elaborate on that approach and discuss any potential challenges?"


class AIResponseError(Exception):
    pass


@dataclass
class CandidateProfile:
    name: str
    position: str
    experience: str = ""
    skills: list[str] = field(default_factory=list)
    resume: str = ""


def default_rubric(question_type: str) -> dict[str, dict[str, Any]]:
    rubric = {
        "technical_accuracy": {"weight": 0.4, "description": "Technical correctness and understanding"},
        "problem_solving": {"weight": 0.3, "description": "Problem-solving approach and methodology"},
        "communication": {"weight": 0.3, "description": "Clarity and effectiveness of communication"},
    }
    if question_type == "coding":
        rubric["technical_accuracy"]["weight"] = 0.3
        rubric["problem_solving"]["weight"] = 0.3
        rubric["communication"]["weight"] = 0.2
        rubric["code_quality"] = {"weight": 0.2, "description": "Code structure, readability, and best practices"}
    elif question_type == "system_design":
        rubric["technical_accuracy"]["weight"] = 0.3
        rubric["problem_solving"]["weight"] = 0.2
        rubric["communication"]["weight"] = 0.2
        rubric["system_thinking"] = {"weight": 0.3, "description": "System architecture and scalability considerations"}
    return rubric


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(x).strip() for x in value if str(x).strip()]


def basic_score(response: str, question: dict[str, Any]) -> float:
    text = str(response or "")
    score = 5.0

    if len(text) > 100:
        score += 1
    if len(text) > 300:
        score += 1

    key_points = _str_list(question.get("keyPoints"))
    words = text.lower().split()
    matches = sum(1 for kp in key_points if any(kp.lower() in w for w in words))
    score += (matches / max(len(key_points), 1)) * 2

    qtype = question.get("type")
    if qtype == "coding" and "function" in text:
        score += 0.5
    if qtype == "technical" and ("because" in text or "reason" in text):
        score += 0.5

    return clamp(score, 1, 10)


def _strip_fences(text: str) -> str:
    s = str(text or "").strip()
    s = re.sub(r"^```(?:json)?\s*", "", s)
    s = re.sub(r"\s*```$", "", s)
    return s.strip()


def parse_model_json(text: str) -> dict[str, Any]:
    try:
        obj = json.loads(_strip_fences(text))
    except json.JSONDecodeError as e:
        raise AIResponseError(f"Model returned invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise AIResponseError("Model returned a non-object JSON payload")
    return obj


class AIInterviewer:
    def __init__(self, api_key: str = "", model: str = "gemini-2.0-flash", client: Any = None, retries: int = 1):
        self.model = model
        self.retries = max(0, int(retries))
        if client is None and api_key:
            from google import genai

            client = genai.Client(api_key=api_key)
        self.client = client

    @classmethod
    def from_config(cls, cfg) -> "AIInterviewer":
        return cls(api_key=cfg.GEMINI_API_KEY, model=cfg.GEMINI_MODEL)

    def _generate(self, prompt: str) -> str:
        if self.client is None:
            raise AIResponseError("AI client not configured")
        last_exc: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                response = self.client.models.generate_content(model=self.model, contents=prompt)
                text = getattr(response, "text", None)
                if not text:
                    raise AIResponseError("Empty model response")
                return text
            except Exception as e:
                last_exc = e
                logger.warning("model call failed (attempt %s/%s): %s", attempt + 1, self.retries + 1, e)
                if attempt < self.retries:
                    time.sleep(0.5)
        raise AIResponseError(str(last_exc))

    # Questions

    def generate_questions(
        self,
        profile: CandidateProfile,
        interview_type: str = "technical",
        difficulty: str = "intermediate",
        count: int = 10,
    ) -> list[dict[str, Any]]:
        logger.info(
            "generating questions candidate=%s position=%s difficulty=%s count=%s",
            profile.name,
            profile.position,
            difficulty,
            count,
        )
        try:
            parsed = parse_model_json(self._generate(self._question_prompt(profile, interview_type, difficulty, count)))
            raw = parsed.get("questions")
            if not isinstance(raw, list) or not raw:
                raise AIResponseError("No questions in model response")
            questions = self._normalize_questions(raw)[:count]
            logger.info("generated %s questions", len(questions))
            return questions
        except AIResponseError as e:
            logger.error("question generation failed, using fallback: %s", e)
            return self.fallback_questions(profile, count)

    def _question_prompt(self, profile: CandidateProfile, interview_type: str, difficulty: str, count: int) -> str:
        return f"""
You are an expert technical interviewer. Generate {count} high-quality interview questions for this candidate:

Position: {profile.position}
Experience Level: {profile.experience}
Technical Skills: {", ".join(profile.skills)}
Interview Type: {interview_type}
Difficulty: {difficulty}

Requirements:
1. Questions must be relevant to the candidate's skills and experience level
2. Mix conceptual, practical and problem-solving questions
3. Coding questions need clear requirements and constraints
4. Include evaluation criteria
5. Test real-world knowledge, not trivia

Return ONLY this JSON object:
{{
  "questions": [
    {{
      "id": "unique_id",
      "question": "The main question text",
      "type": "technical|behavioral|situational|coding|system_design",
      "difficulty": "easy|medium|hard",
      "category": "technology or skill area",
      "expectedAnswer": "Brief description of the ideal answer",
      "keyPoints": ["key point 1", "key point 2"],
      "followUpQuestions": ["follow-up 1"],
      "timeLimit": 10,
      "rubric": {{
        "technical_accuracy": {{"weight": 0.4, "description": "Understanding of concepts"}},
        "problem_solving": {{"weight": 0.3, "description": "Approach to solving problems"}},
        "communication": {{"weight": 0.3, "description": "Clarity of explanation"}}
      }}
    }}
  ]
}}
"""

    def _normalize_questions(self, raw: list[Any]) -> list[dict[str, Any]]:
        out = []
        stamp = int(time.time() * 1000)
        for i, q in enumerate(raw):
            if not isinstance(q, dict) or not str(q.get("question") or "").strip():
                continue
            qtype = str(q.get("type") or "technical").lower()
            if qtype not in QUESTION_TYPES:
                qtype = "technical"
            difficulty = str(q.get("difficulty") or "medium").lower()
            if difficulty not in QUESTION_DIFFICULTIES:
                difficulty = "medium"
            rubric = q.get("rubric") if isinstance(q.get("rubric"), dict) and q.get("rubric") else default_rubric(qtype)
            out.append(
                {
                    "id": str(q.get("id") or f"q_{stamp}_{i}"),
                    "question": str(q["question"]).strip(),
                    "type": qtype,
                    "difficulty": difficulty,
                    "category": str(q.get("category") or "general"),
                    "expectedAnswer": str(q.get("expectedAnswer") or ""),
                    "keyPoints": _str_list(q.get("keyPoints")),
                    "followUpQuestions": _str_list(q.get("followUpQuestions")),
                    "codeSnippet": q.get("codeSnippet") or None,
                    "timeLimit": int(to_float_maybe(q.get("timeLimit")) or 10),
                    "rubric": rubric,
                }
            )
        if not out:
            raise AIResponseError("Model questions were all malformed")
        return out

    def fallback_questions(self, profile: CandidateProfile, count: int) -> list[dict[str, Any]]:
        skill = profile.skills[0] if profile.skills else ""
        base = [
            {
                "id": "fallback_1",
                "question": f"Tell me about your experience with {skill or 'software development'}.",
                "type": "technical",
                "difficulty": "medium",
                "category": skill or "general",
                "expectedAnswer": "Detailed experience with practical examples",
                "keyPoints": ["Experience level", "Practical applications", "Challenges faced"],
                "followUpQuestions": ["What challenges did you face?", "How did you overcome them?"],
                "timeLimit": 10,
            },
            {
                "id": "fallback_2",
                "question": "Describe a challenging project you worked on recently.",
                "type": "behavioral",
                "difficulty": "medium",
                "category": "problem-solving",
                "expectedAnswer": "Specific project with challenges and solutions",
                "keyPoints": ["Project complexity", "Problem-solving approach", "Results achieved"],
                "followUpQuestions": ["What would you do differently?", "What did you learn?"],
                "timeLimit": 15,
            },
            {
                "id": "fallback_3",
                "question": "How do you approach debugging a complex issue?",
                "type": "technical",
                "difficulty": "medium",
                "category": "debugging",
                "expectedAnswer": "Systematic debugging methodology",
                "keyPoints": ["Debugging process", "Tools and techniques", "Prevention strategies"],
                "followUpQuestions": ["What tools do you use?", "How do you prevent similar issues?"],
                "timeLimit": 10,
            },
            {
                "id": "fallback_4",
                "question": "Explain how you would optimize the performance of a web application.",
                "type": "technical",
                "difficulty": "medium",
                "category": "performance",
                "expectedAnswer": "Comprehensive performance optimization strategies",
                "keyPoints": ["Performance analysis", "Optimization techniques", "Monitoring"],
                "followUpQuestions": ["How do you measure performance?", "What are common bottlenecks?"],
                "timeLimit": 15,
            },
            {
                "id": "fallback_5",
                "question": "How do you handle working with difficult team members or conflicting requirements?",
                "type": "behavioral",
                "difficulty": "medium",
                "category": "teamwork",
                "expectedAnswer": "Conflict resolution and communication strategies",
                "keyPoints": ["Communication skills", "Conflict resolution", "Team collaboration"],
                "followUpQuestions": ["Can you give a specific example?", "How did you resolve the situation?"],
                "timeLimit": 10,
            },
        ]
        for q in base:
            q["codeSnippet"] = None
            q["rubric"] = default_rubric(q["type"])
        return base[: max(0, min(count, len(base)))]

    # Evaluation

    def evaluate_response(self, question: dict[str, Any], response: str, context: str = "") -> dict[str, Any]:
        rubric = question.get("rubric") or default_rubric(str(question.get("type") or "technical"))
        prompt = f"""
Evaluate this interview response using the rubric.

Question: {question.get("question")}
Question Type: {question.get("type")}
Category: {question.get("category")}
Difficulty: {question.get("difficulty")}
Expected Answer: {question.get("expectedAnswer")}
Key Points to Look For: {", ".join(question.get("keyPoints") or [])}

Candidate Response: {response}
Additional Context: {context}

Evaluation Rubric:
{json.dumps(rubric, indent=2)}

Score each rubric criterion 0-10, give an overall weighted score, constructive
feedback, and a follow-up question only if the answer needs clarification.

Return ONLY this JSON object:
{{
  "detailedScores": {{"technical_accuracy": 7.5, "problem_solving": 8.0, "communication": 6.5}},
  "overallScore": 7.3,
  "feedback": "Constructive feedback",
  "followUp": "Optional follow-up question or empty string"
}}
"""
        try:
            parsed = parse_model_json(self._generate(prompt))
            score = to_float_maybe(parsed.get("overallScore", parsed.get("score")))
            if score is None:
                raise AIResponseError("Evaluation missing overallScore")
            detailed = parsed.get("detailedScores") if isinstance(parsed.get("detailedScores"), dict) else {}
            result = {
                "score": round(clamp(score, 1, 10), 2),
                "feedback": str(parsed.get("feedback") or ""),
                "detailedScores": {
                    k: round(clamp(v, 0, 10), 2)
                    for k, v in ((k, to_float_maybe(v)) for k, v in detailed.items())
                    if v is not None
                },
                "followUp": str(parsed.get("followUp") or "").strip() or None,
            }
            logger.info(
                "response evaluated question_id=%s score=%s response_length=%s",
                question.get("id"),
                result["score"],
                len(str(response or "")),
            )
            return result
        except AIResponseError as e:
            logger.error("evaluation failed, using fallback: %s", e)
            score = round(basic_score(response, question), 2)
            follow_ups = question.get("followUpQuestions") or []
            detail = "Comprehensive answer provided." if len(str(response or "")) > 50 else "Consider providing more detail."
            return {
                "score": score,
                "feedback": f"Response received. {detail}",
                "detailedScores": {criterion: score for criterion in rubric},
                "followUp": follow_ups[0] if follow_ups else None,
            }

    def generate_follow_up(self, question: dict[str, Any], response: str, context: str = "") -> str:
        predefined = question.get("followUpQuestions") or []
        if predefined:
            return str(predefined[0])

        prompt = f"""
Based on this interview exchange, generate one follow-up question that digs deeper
into the candidate's answer, tests practical application or edge cases, and fits
the question's type and difficulty.

Original Question: {question.get("question")}
Candidate Response: {response}
Context: {context}

Return only the follow-up question, no additional text.
"""
        try:
            return self._generate(prompt).strip()
        except AIResponseError as e:
            logger.error("follow-up generation failed: %s", e)
            return DEFAULT_FOLLOW_UP

    # Summary

    def generate_summary(self, questions: list[dict[str, Any]], responses: list[Optional[dict[str, Any]]]) -> dict[str, Any]:
        history = []
        for i, q in enumerate(questions):
            r = responses[i] if i < len(responses) else None
            history.append(
                {
                    "question": q.get("question"),
                    "response": (r or {}).get("response") or "No response",
                    "score": (r or {}).get("score") or 0,
                }
            )

        prompt = f"""
Analyze this complete interview session and provide an evaluation.

Interview Data: {json.dumps(history, indent=2)}

Provide the overall score (0-10), top 3 strengths, top 3 areas for improvement,
a hiring recommendation (strong_hire, hire, no_hire, strong_no_hire) and a
summary paragraph.

Return ONLY this JSON object:
{{
  "overallScore": 7.2,
  "strengths": ["strength 1", "strength 2", "strength 3"],
  "weaknesses": ["area 1", "area 2", "area 3"],
  "recommendation": "hire",
  "summary": "Summary of the candidate's performance"
}}
"""
        try:
            parsed = parse_model_json(self._generate(prompt))
            score = to_float_maybe(parsed.get("overallScore"))
            if score is None:
                raise AIResponseError("Summary missing overallScore")
            recommendation = str(parsed.get("recommendation") or "no_hire").strip().lower().replace(" ", "_")
            if recommendation not in RECOMMENDATIONS:
                recommendation = "no_hire"
            summary = {
                "overallScore": round(clamp(score, 0, 10), 2),
                "strengths": [str(x) for x in (parsed.get("strengths") or [])],
                "weaknesses": [str(x) for x in (parsed.get("weaknesses") or [])],
                "recommendation": recommendation,
                "summary": str(parsed.get("summary") or "Analysis completed successfully."),
            }
            logger.info("summary generated score=%s recommendation=%s", summary["overallScore"], recommendation)
            return summary
        except AIResponseError as e:
            logger.error("summary generation failed, using fallback: %s", e)
            return fallback_summary(responses)


def fallback_summary(responses: list[Optional[dict[str, Any]]]) -> dict[str, Any]:
    answered = [r for r in responses if r]
    avg = sum(float(r.get("score") or 0) for r in answered) / len(answered) if answered else 0.0
    if avg >= 7:
        recommendation = "hire"
    elif avg >= 5:
        recommendation = "no_hire"
    else:
        recommendation = "strong_no_hire"
    return {
        "overallScore": round(avg, 2),
        "strengths": ["Communication skills", "Technical knowledge", "Problem-solving approach"],
        "weaknesses": ["More detail needed", "Practice recommended", "Further exploration required"],
        "recommendation": recommendation,
        "summary": f"Candidate completed {len(answered)} questions with an average score of {avg:.1f}.",
    }
