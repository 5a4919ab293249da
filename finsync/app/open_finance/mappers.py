"""
Category and type mappers

Pure functions translating provider descriptors into local values:
- Transaction -> spending category (MCC, merchant patterns, keywords, amount)
- Transaction -> income / expense / transfer
- Account -> AccountType
- Loan and investment product descriptors -> local type labels
- Item status -> ConnectionStatus
"""

import re
from decimal import Decimal
from typing import Dict, List, Optional

from finsync.app.models import AccountType, ConnectionStatus, TransactionType
from .providers.payloads import Account, Transaction

DEFAULT_CATEGORY = "Outros"

MCC_CATEGORIES: Dict[str, str] = {
    "5411": "Alimentação",
    "5812": "Alimentação",
    "5814": "Alimentação",
    "5499": "Alimentação",
    "5541": "Transporte",
    "5542": "Transporte",
    "4121": "Transporte",
    "4131": "Transporte",
    "5311": "Compras",
    "5331": "Compras",
    "5651": "Compras",
    "5732": "Compras",
    "5813": "Entretenimento",
    "7832": "Entretenimento",
    "7999": "Entretenimento",
    "4814": "Contas e Serviços",
    "4900": "Contas e Serviços",
    "6300": "Contas e Serviços",
    "8011": "Saúde",
    "8021": "Saúde",
    "5912": "Saúde",
    "7011": "Viagem",
    "8220": "Educação",
    "8299": "Educação",
}

# Airline MCCs occupy a whole range
AIRLINE_MCC_RANGE = range(3000, 3300)

MERCHANT_PATTERNS: Dict[str, List[str]] = {
    "Alimentação": [
        "mcdonalds", "burger king", "kfc", "subway", "pizza hut", "dominos", "starbucks",
        "restaurante", "lanchonete", "padaria", "mercado", "supermercado", "açougue",
        "hortifruti", "ifood", "uber eats", "rappi",
    ],
    "Compras": [
        "amazon", "mercado livre", "magazine luiza", "casas bahia", "carrefour",
        "americanas", "submarino", "shoptime", "zara", "centauro", "netshoes",
        "shopping", "loja", "farmacia", "drogaria",
    ],
    "Transporte": [
        "uber", "99pay", "taxi", "shell", "petrobras", "ipiranga", "posto",
        "combustivel", "metro", "cptm", "onibus", "bilhete unico",
        "sem parar", "autopass", "conectcar",
    ],
    "Entretenimento": [
        "netflix", "spotify", "amazon prime", "disney", "globoplay", "youtube",
        "cinema", "teatro", "ingresso", "balada",
    ],
    "Contas e Serviços": [
        "claro", "vivo", "tim", "oi", "internet", "telefone", "energia",
        "sabesp", "agua", "luz", "condominio", "iptu", "ipva",
        "seguro", "bradesco seguros", "porto seguro",
    ],
}

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "Alimentação": [
        "food", "dining", "restaurant", "grocery", "supermarket", "market",
        "alimentacao", "restaurante", "lanchonete", "mercado", "supermercado",
        "padaria", "acougue", "hortifruti", "delivery",
    ],
    "Transporte": [
        "transportation", "gas", "fuel", "parking", "toll", "automotive",
        "transporte", "combustivel", "gasolina", "etanol", "diesel",
        "estacionamento", "pedagio", "oficina",
    ],
    "Compras": [
        "shopping", "retail", "store", "purchase", "clothing", "electronics",
        "compras", "loja", "varejo", "roupas", "calcados", "eletronicos",
        "decoracao", "moveis",
    ],
    "Entretenimento": [
        "entertainment", "recreation", "movie", "music", "gaming", "streaming",
        "entretenimento", "diversao", "cinema", "musica", "jogo", "lazer",
        "festa", "balada", "show",
    ],
    "Contas e Serviços": [
        "bills", "utilities", "services", "insurance", "subscription", "fee",
        "contas", "servicos", "utilidades", "seguro", "assinatura", "taxa",
        "tarifa", "anuidade", "manutencao",
    ],
    "Saúde": [
        "health", "medical", "pharmacy", "doctor", "hospital", "dental",
        "saude", "medico", "farmacia", "clinica", "laboratorio",
        "consulta", "exame", "medicamento",
    ],
    "Viagem": [
        "travel", "hotel", "flight", "airline", "accommodation", "tourism",
        "viagem", "pousada", "voo", "passagem", "turismo",
        "hospedagem", "booking", "decolar",
    ],
    "Educação": [
        "education", "school", "university", "course", "training", "learning",
        "educacao", "escola", "universidade", "faculdade", "curso",
        "treinamento", "aula",
    ],
    "Cuidados Pessoais": [
        "personal", "beauty", "salon", "cosmetics", "hygiene", "grooming",
        "beleza", "salao", "barbearia", "estetica", "cosmeticos",
        "perfumaria", "higiene",
    ],
}

TRANSFER_MARKERS = ("pix", "ted", "transferencia", "transferência")


def _contains(haystack: str, needle: str) -> bool:
    # Short tokens ("oi", "tim") only match whole words
    if len(needle) <= 3:
        return re.search(rf"\b{re.escape(needle)}\b", haystack) is not None
    return needle in haystack


def _mcc_category(mcc: Optional[str]) -> Optional[str]:
    if not mcc:
        return None
    if mcc in MCC_CATEGORIES:
        return MCC_CATEGORIES[mcc]
    if mcc.isdigit() and int(mcc) in AIRLINE_MCC_RANGE:
        return "Viagem"
    return None


def map_category(transaction: Transaction) -> str:
    """
    Classify a provider transaction into a local spending category.

    Resolution order: merchant category code, known merchant names, PIX/TED
    transfers, category keywords, then amount heuristics.

    Args:
        transaction: Validated provider transaction

    Returns:
        Category label, DEFAULT_CATEGORY when nothing matches
    """
    category = (transaction.category or "").lower()
    description = (transaction.description or "").lower()
    merchant = transaction.merchant
    merchant_name = ((merchant.name if merchant else None) or "").lower()
    amount = abs(transaction.amount)

    by_mcc = _mcc_category(merchant.mcc if merchant else None)
    if by_mcc:
        return by_mcc

    for name, patterns in MERCHANT_PATTERNS.items():
        if any(_contains(merchant_name, p) or _contains(description, p) for p in patterns):
            return name

    payment = transaction.payment_data
    payment_method = ((payment.payment_method if payment else None) or "").lower()
    if any(_contains(description, marker) for marker in TRANSFER_MARKERS) or "pix" in payment_method:
        payee_name = ((payment.payee.name if payment and payment.payee else None) or "").lower()
        if payee_name and "pessoa fisica" not in payee_name:
            return "Compras"
        return DEFAULT_CATEGORY

    for name, keywords in CATEGORY_KEYWORDS.items():
        if any(_contains(category, k) or _contains(description, k) or _contains(merchant_name, k) for k in keywords):
            return name

    if amount > Decimal("5000"):
        return DEFAULT_CATEGORY
    if amount < Decimal("5"):
        return "Contas e Serviços"
    return DEFAULT_CATEGORY


def map_transaction_type(transaction: Transaction) -> TransactionType:
    payment = transaction.payment_data
    if payment and payment.payer and payment.payee:
        payer, payee = payment.payer.name, payment.payee.name
        if payer and payee and payer.strip().lower() == payee.strip().lower():
            return TransactionType.TRANSFER
    if transaction.amount < 0:
        return TransactionType.EXPENSE
    return TransactionType.INCOME


def map_account_type(account: Account) -> AccountType:
    account_type = account.type.lower()
    subtype = (account.subtype or "").lower()

    if "credit" in account_type or "credit" in subtype:
        return AccountType.CREDIT_CARD
    if "loan" in account_type or "financing" in subtype or "loan" in subtype:
        return AccountType.LOAN
    if (
        "investment" in account_type or "investment" in subtype
        or "fund" in subtype or account.investment_data is not None
    ):
        return AccountType.INVESTMENT
    if "savings" in account_type or "savings" in subtype:
        return AccountType.SAVINGS
    return AccountType.CHECKING


def map_loan_type(product_type: Optional[str], product_sub_type: Optional[str] = None) -> str:
    loan_type = (product_type or "").lower()
    sub_type = (product_sub_type or "").lower()
    text = f"{loan_type} {sub_type}"

    if any(k in text for k in ("home", "mortgage", "real_estate", "imobiliario", "casa", "imovel")):
        return "Financiamento Imobiliário"
    if any(k in text for k in ("vehicle", "auto", "veiculo", "carro", "moto")) or _contains(text, "car"):
        return "Financiamento de Veículo"
    if any(k in text for k in ("personal", "pessoal", "crediario")):
        return "Empréstimo Pessoal"
    if any(k in text for k in ("consignment", "consignado", "payroll")):
        return "Empréstimo Consignado"
    if any(k in text for k in ("credit_card", "cartao", "card")):
        return "Cartão de Crédito"
    if any(k in text for k in ("overdraft", "cheque_especial", "especial")):
        return "Cheque Especial"
    if any(k in text for k in ("student", "education", "estudantil", "fies", "educacao")):
        return "Financiamento Estudantil"
    if "sfi" in sub_type or "sbpe" in sub_type:
        return "Financiamento Imobiliário"
    return "Outros Empréstimos"


def map_investment_type(investment_type: Optional[str], instrument_type: Optional[str] = None) -> str:
    kind = (investment_type or "").lower()
    instrument = (instrument_type or "").lower()

    if "stock" in kind or "equity" in kind or "stock" in instrument:
        return "Ações"
    if "real_estate_fund" in kind or "fii" in kind or "real_estate_fund" in instrument:
        return "Fundos Imobiliários"
    if "treasury" in kind or "government_bond" in kind or "tesouro" in kind:
        return "Tesouro Direto"
    if "cdb" in kind or "certificate_of_deposit" in kind or "cdb" in instrument:
        return "CDB"
    if any(k in kind or k in instrument for k in ("lci", "lca", "real_estate_certificate")):
        return "LCI/LCA"
    if "savings" in kind or "poupanca" in kind:
        return "Poupança"
    if "fund" in kind or "fund" in instrument:
        return "Fundos de Investimento"
    if "crypto" in kind or "bitcoin" in kind:
        return "Criptomoedas"
    return "Outros"


def map_connection_status(provider_status: Optional[str]) -> ConnectionStatus:
    status = (provider_status or "").upper()
    if status == "LOGIN_ERROR":
        return ConnectionStatus.LOGIN_ERROR
    if status == "OUTDATED":
        return ConnectionStatus.OUTDATED
    if status == "WEBHOOK_ERROR":
        return ConnectionStatus.WEBHOOK_ERROR
    return ConnectionStatus.CONNECTED
