from p2p_settlement.bank.captcha import CaptchaSolver, build_captcha_solver
from p2p_settlement.bank.cipher import CipherGateway, load_cipher_gateway
from p2p_settlement.bank.client import BankSessionClient, Session
from p2p_settlement.bank.fetcher import TransactionFetcher, validate_history_range

__all__ = [
    "CaptchaSolver",
    "build_captcha_solver",
    "CipherGateway",
    "load_cipher_gateway",
    "BankSessionClient",
    "Session",
    "TransactionFetcher",
    "validate_history_range",
]
