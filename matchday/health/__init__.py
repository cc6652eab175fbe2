from matchday.health.manager import PredictorHealthManager

__all__ = ["PredictorHealthManager"]
