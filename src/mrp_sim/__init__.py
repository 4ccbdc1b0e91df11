"""MRP simulation study - simulate a biased survey, fit a multilevel model, poststratify."""

__version__ = "0.1.0"

from mrp_sim.models import GroundTruth as GroundTruth
from mrp_sim.models import PopulationCell as PopulationCell
from mrp_sim.models import SurveyResponse as SurveyResponse
from mrp_sim.scenario import Scenario as Scenario
from mrp_sim.simulate import SurveySimulator as SurveySimulator
