"""
Photo Processing Pipeline

Three-stage pipeline:
1. Chroma-key removal - green screen to transparent
2. Compositing - foreground over a catalog backdrop
3. AI enhancement - Gemini generative-image call with retry
"""
