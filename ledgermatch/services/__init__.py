# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "CalibrationService":
        from ledgermatch.services.calibration import CalibrationService
        return CalibrationService
    elif name == "CandidateSearch":
        from ledgermatch.services.matching import CandidateSearch
        return CandidateSearch
    elif name == "CurrencyConverter":
        from ledgermatch.services.multi_currency import CurrencyConverter
        return CurrencyConverter
    elif name == "MatchStateMachine":
        from ledgermatch.services.match_state import MatchStateMachine
        return MatchStateMachine
    elif name == "MatchingOrchestrator":
        from ledgermatch.services.orchestrator import MatchingOrchestrator
        return MatchingOrchestrator
    elif name == "MerchantPatternService":
        from ledgermatch.services.merchant_patterns import MerchantPatternService
        return MerchantPatternService
    raise AttributeError(f"module 'ledgermatch.services' has no attribute '{name}'")

__all__ = [
    "CalibrationService",
    "CandidateSearch",
    "CurrencyConverter",
    "MatchStateMachine",
    "MatchingOrchestrator",
    "MerchantPatternService",
]
