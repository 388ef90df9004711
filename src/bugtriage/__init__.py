"""bugtriage - exception triage: fault localization, blame caching and bug matching"""

__version__ = "0.1.0"
