"""Tests for LedgerTransactor."""
from decimal import Decimal
from unittest.mock import patch
import pytest


USER = "u1"


@pytest.fixture
def store():
    from coinagent.core.data_store import InMemoryDocumentStore

    return InMemoryDocumentStore()


@pytest.fixture
def ledger(store):
    from coinagent.core.ledger import LedgerTransactor

    ledger = LedgerTransactor(store)
    ledger.initialize(USER, Decimal("600"), ["BTC", "ETH"])
    return ledger


def buy(asset: str, notional: str, price: str = "100"):
    from coinagent.models import Action, Decision

    return Decision(
        asset=asset, action=Action.BUY, score=80, price=Decimal(price),
        reason="Bullish signal", notional=Decimal(notional),
    )


def sell(asset: str, price: str = "100"):
    from coinagent.models import Action, Decision

    return Decision(
        asset=asset, action=Action.SELL, score=20, price=Decimal(price),
        reason="Bearish signal", amount=Decimal("0"),
    )


def hold(asset: str, price: str = "100"):
    from coinagent.models import Action, Decision

    return Decision(asset=asset, action=Action.HOLD, score=60, price=Decimal(price), reason="Neutral")


# =============================================================================
# Lifecycle
# =============================================================================

def test_initialize_creates_portfolio(ledger):
    portfolio = ledger.get_portfolio(USER)

    assert portfolio.cash_balance == Decimal("600")
    assert portfolio.initial_balance == Decimal("600")
    assert portfolio.total_value == Decimal("600")
    assert portfolio.holdings == {}
    assert portfolio.targets == ["BTC", "ETH"]


def test_initialize_is_idempotent(ledger):
    ledger.apply(USER, [buy("BTC", "50")])

    portfolio = ledger.initialize(USER, Decimal("1000"), ["SOL"])

    assert portfolio.cash_balance == Decimal("550")
    assert portfolio.targets == ["BTC", "ETH"]


def test_initialize_rejects_non_positive_balance(store):
    from coinagent.core.errors import LedgerError
    from coinagent.core.ledger import LedgerTransactor

    with pytest.raises(LedgerError):
        LedgerTransactor(store).initialize("new", Decimal("0"))


def test_get_portfolio_missing(ledger):
    assert ledger.get_portfolio("nobody") is None


def test_reset_restores_initial_state(ledger):
    ledger.apply(USER, [buy("BTC", "50"), buy("ETH", "50")])
    ledger.apply(USER, [sell("BTC", "120")])

    portfolio = ledger.reset(USER, 600)

    assert portfolio.cash_balance == Decimal("600")
    assert portfolio.total_value == Decimal("600")
    assert portfolio.initial_balance == Decimal("600")
    assert portfolio.holdings == {}
    assert portfolio.targets == ["BTC", "ETH"]
    assert ledger.list_trades(USER) == []
    assert ledger.list_history(USER) == []
    assert ledger.get_portfolio(USER) == portfolio


def test_reset_with_new_balance(ledger):
    portfolio = ledger.reset(USER, Decimal("1000"))

    assert portfolio.cash_balance == Decimal("1000")
    assert portfolio.initial_balance == Decimal("1000")


def test_reset_rejects_non_positive_balance(ledger):
    from coinagent.core.errors import LedgerError

    with pytest.raises(LedgerError):
        ledger.reset(USER, 0)

    # Nothing was wiped
    assert ledger.get_portfolio(USER) is not None


def test_reset_keeps_decision_audit(ledger):
    ledger.apply(USER, [buy("BTC", "50")])

    ledger.reset(USER, 600)

    assert len(ledger.list_decisions(USER)) == 1


def test_update_targets_normalizes(ledger):
    targets = ledger.update_targets(USER, [" btc ", "eth", "", "BTC", "sol"])

    assert targets == ["BTC", "ETH", "SOL"]
    assert ledger.get_portfolio(USER).targets == ["BTC", "ETH", "SOL"]


def test_update_targets_caps_list(ledger):
    targets = ledger.update_targets(USER, [f"T{i}" for i in range(20)])

    assert len(targets) == 15
    assert targets[0] == "T0"
    assert targets[-1] == "T14"


def test_update_targets_missing_portfolio(ledger):
    from coinagent.core.errors import PortfolioNotFound

    with pytest.raises(PortfolioNotFound):
        ledger.update_targets("nobody", ["BTC"])


# =============================================================================
# apply
# =============================================================================

def test_apply_missing_portfolio(ledger):
    from coinagent.core.errors import PortfolioNotFound

    with pytest.raises(PortfolioNotFound):
        ledger.apply("nobody", [buy("BTC", "50")])


def test_buy_opens_position(ledger):
    from coinagent.models import Side

    result = ledger.apply(USER, [buy("BTC", "50", price="25000")])

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.side == Side.BUY
    assert trade.amount == Decimal("0.002")
    assert trade.total == Decimal("50")

    portfolio = result.portfolio
    assert portfolio.cash_balance == Decimal("550")
    assert portfolio.holdings["BTC"].amount == Decimal("0.002")
    assert portfolio.holdings["BTC"].average_cost == Decimal("25000")
    assert portfolio.total_value == Decimal("600")
    assert ledger.get_portfolio(USER) == portfolio


def test_sell_closes_whole_position(ledger):
    from coinagent.models import Side

    ledger.apply(USER, [buy("BTC", "50", price="100")])

    result = ledger.apply(USER, [sell("BTC", price="120")])

    trade = result.trades[0]
    assert trade.side == Side.SELL
    assert trade.amount == Decimal("0.5")
    assert trade.total == Decimal("60.0")
    assert "BTC" not in result.portfolio.holdings
    assert result.portfolio.cash_balance == Decimal("610.0")
    assert result.portfolio.total_value == Decimal("610.0")


def test_sell_before_buy_funds_purchase(store):
    from coinagent.core.ledger import LedgerTransactor
    from coinagent.models import Side

    ledger = LedgerTransactor(store)
    ledger.initialize(USER, Decimal("60"))
    ledger.apply(USER, [buy("BTC", "50", price="100")])  # cash 10

    # BUY listed first still sees the SELL proceeds
    result = ledger.apply(USER, [buy("ETH", "50", price="10"), sell("BTC", price="100")])

    assert [t.side for t in result.trades] == [Side.SELL, Side.BUY]
    assert result.rejected == []
    assert result.portfolio.cash_balance == Decimal("10")
    assert result.portfolio.holdings["ETH"].amount == Decimal("5")


def test_buy_exceeding_cash_is_rejected(store):
    from coinagent.core.ledger import LedgerTransactor

    ledger = LedgerTransactor(store)
    ledger.initialize(USER, Decimal("60"))

    result = ledger.apply(USER, [buy("BTC", "50"), buy("ETH", "50")])

    assert [t.asset for t in result.trades] == ["BTC"]
    assert len(result.rejected) == 1
    assert result.rejected[0].decision.asset == "ETH"
    assert "exceeds cash" in result.rejected[0].reason
    assert result.portfolio.cash_balance == Decimal("10")
    assert result.portfolio.cash_balance >= 0


def test_buys_applied_in_caller_order(store):
    from coinagent.core.ledger import LedgerTransactor

    ledger = LedgerTransactor(store)
    ledger.initialize(USER, Decimal("70"))

    result = ledger.apply(USER, [buy("SOL", "50"), buy("BTC", "30"), buy("ETH", "20")])

    assert [t.asset for t in result.trades] == ["SOL", "ETH"]
    assert [r.decision.asset for r in result.rejected] == ["BTC"]
    assert result.portfolio.cash_balance == Decimal("0")


def test_buy_below_minimum_is_rejected(ledger):
    result = ledger.apply(USER, [buy("BTC", "9.99")])

    assert result.trades == []
    assert "below minimum" in result.rejected[0].reason


def test_second_buy_of_held_asset_is_rejected(ledger):
    ledger.apply(USER, [buy("BTC", "50")])

    result = ledger.apply(USER, [buy("BTC", "50")])

    assert result.trades == []
    assert "Already holding" in result.rejected[0].reason
    assert result.portfolio.cash_balance == Decimal("550")


def test_duplicate_buy_in_same_batch_is_rejected(ledger):
    result = ledger.apply(USER, [buy("BTC", "50"), buy("BTC", "50")])

    assert len(result.trades) == 1
    assert len(result.rejected) == 1


def test_sell_without_position_is_rejected(ledger):
    result = ledger.apply(USER, [sell("SOL")])

    assert result.trades == []
    assert result.rejected[0].reason == "No position to sell"


@pytest.mark.parametrize("decision_kwargs", [
    {"asset": "", "price": "100"},
    {"asset": "bad ticker", "price": "100"},
    {"asset": "BTC", "price": "0"},
    {"asset": "BTC", "price": "-5"},
])
def test_invalid_decisions_are_dropped(ledger, decision_kwargs):
    result = ledger.apply(USER, [buy(decision_kwargs["asset"], "50", price=decision_kwargs["price"])])

    assert result.trades == []
    assert len(result.rejected) == 1
    assert result.portfolio.cash_balance == Decimal("600")


def test_negative_notional_is_invalid():
    from coinagent.core.errors import InvalidDecisionInput
    from coinagent.core.ledger import validate_decision

    with pytest.raises(InvalidDecisionInput):
        validate_decision(buy("BTC", "-1"))


def test_hold_values_portfolio_at_decision_price(ledger):
    ledger.apply(USER, [buy("BTC", "50", price="100")])

    result = ledger.apply(USER, [hold("BTC", price="200")])

    assert result.trades == []
    assert result.portfolio.total_value == Decimal("650")
    assert result.snapshot.holdings_value == Decimal("100")
    assert result.snapshot.cash_balance == Decimal("550")


def test_unpriced_holdings_valued_at_average_cost(ledger):
    ledger.apply(USER, [buy("BTC", "50", price="100")])

    result = ledger.apply(USER, [hold("ETH", price="3000")])

    assert result.portfolio.total_value == Decimal("600")


def test_one_snapshot_per_apply(ledger):
    ledger.apply(USER, [buy("BTC", "50")])
    ledger.apply(USER, [hold("BTC", price="110")])
    ledger.apply(USER, [])

    history = ledger.list_history(USER)

    assert len(history) == 3
    assert history[0].total_value == Decimal("600")
    assert history[1].total_value == Decimal("605.0")


def test_trades_listed_newest_first(ledger):
    ledger.apply(USER, [buy("BTC", "50")])
    ledger.apply(USER, [sell("BTC")])

    trades = ledger.list_trades(USER)

    assert [t.side.value for t in trades] == ["SELL", "BUY"]
    assert len(ledger.list_trades(USER, limit=1)) == 1


def test_trades_listed_newest_first_without_store_ordering():
    from coinagent.core.data_store import InMemoryDocumentStore
    from coinagent.core.ledger import LedgerTransactor

    ledger = LedgerTransactor(InMemoryDocumentStore(supports_ordering=False))
    ledger.initialize(USER, Decimal("600"))
    ledger.apply(USER, [buy("BTC", "50")])
    ledger.apply(USER, [sell("BTC")])

    assert [t.side.value for t in ledger.list_trades(USER)] == ["SELL", "BUY"]


def test_decision_audit_trail(ledger):
    ledger.apply(USER, [buy("BTC", "50"), hold("ETH"), buy("SOL", "5")])

    entries = {d["asset"]: d for d in ledger.list_decisions(USER)}

    assert entries["BTC"]["status"] == "executed"
    assert entries["ETH"]["status"] == "no_action"
    assert entries["SOL"]["status"] == "rejected"
    assert "below minimum" in entries["SOL"]["rejection"]


def test_cash_never_negative(ledger):
    decisions = [buy(f"A{i}", "50") for i in range(20)]

    result = ledger.apply(USER, decisions)

    assert len(result.trades) == 12
    assert result.portfolio.cash_balance == Decimal("0")
    assert result.portfolio.cash_balance >= 0


# =============================================================================
# Optimistic concurrency
# =============================================================================

def test_conflict_retries_then_succeeds(ledger, store):
    from coinagent.core.data_store import _BufferedTransaction

    original_commit = _BufferedTransaction.commit
    calls = {"n": 0}

    def flaky_commit(txn):
        calls["n"] += 1
        if calls["n"] == 1:
            # Another writer touches the portfolio between read and commit
            store.set("virtual_portfolio", USER, store.get("virtual_portfolio", USER))
        return original_commit(txn)

    with patch.object(_BufferedTransaction, "commit", flaky_commit):
        result = ledger.apply(USER, [buy("BTC", "50")])

    assert calls["n"] == 2
    assert len(result.trades) == 1
    assert len(ledger.list_trades(USER)) == 1
    assert ledger.get_portfolio(USER).cash_balance == Decimal("550")


def test_conflict_exhaustion_writes_nothing(store):
    from coinagent.core.errors import LedgerConflict
    from coinagent.core.ledger import LedgerTransactor

    ledger = LedgerTransactor(store, max_retries=3)
    ledger.initialize(USER, Decimal("600"))

    with patch.object(store, "_commit", side_effect=LedgerConflict("stale")) as mock_commit:
        with pytest.raises(LedgerConflict):
            ledger.apply(USER, [buy("BTC", "50")])

    assert mock_commit.call_count == 3
    assert ledger.list_trades(USER) == []
    assert ledger.list_history(USER) == []
    assert ledger.get_portfolio(USER).cash_balance == Decimal("600")


def test_failed_append_on_file_store_leaves_portfolio_unchanged():
    import tempfile
    from coinagent.core.data_store import FileDocumentStore
    from coinagent.core.ledger import LedgerTransactor

    with tempfile.TemporaryDirectory() as tmpdir:
        file_store = FileDocumentStore(base_path=tmpdir)
        file_ledger = LedgerTransactor(file_store)
        file_ledger.initialize(USER, Decimal("600"), ["BTC"])
        version_before = file_store._read_versioned("virtual_portfolio", USER)[0]

        with patch.object(file_store, "_append_many", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                file_ledger.apply(USER, [buy("BTC", "50")])

        assert file_store._read_versioned("virtual_portfolio", USER)[0] == version_before
        assert file_ledger.get_portfolio(USER).cash_balance == Decimal("600")
        assert file_ledger.get_portfolio(USER).holdings == {}
        assert file_ledger.list_trades(USER) == []
        assert file_ledger.list_history(USER) == []
        assert not file_store.journal_path.exists()


def test_failed_reset_keeps_trades_and_history():
    import tempfile
    from coinagent.core.data_store import FileDocumentStore
    from coinagent.core.ledger import LedgerTransactor

    with tempfile.TemporaryDirectory() as tmpdir:
        file_store = FileDocumentStore(base_path=tmpdir)
        file_ledger = LedgerTransactor(file_store)
        file_ledger.initialize(USER, Decimal("600"), ["BTC"])
        file_ledger.apply(USER, [buy("BTC", "50")])

        original_write = file_store._write_versioned

        def failing_write(collection, key, document, version):
            if document is not None and document.get("cash_balance") == "1000":
                raise OSError("disk full")
            return original_write(collection, key, document, version)

        with patch.object(file_store, "_write_versioned", side_effect=failing_write):
            with pytest.raises(OSError):
                file_ledger.reset(USER, Decimal("1000"))

        portfolio = file_ledger.get_portfolio(USER)
        assert portfolio.cash_balance == Decimal("550")
        assert len(file_ledger.list_trades(USER)) == 1
        assert len(file_ledger.list_history(USER)) == 1


def test_invalid_max_retries(store):
    from coinagent.core.ledger import LedgerTransactor

    with pytest.raises(ValueError):
        LedgerTransactor(store, max_retries=0)


def test_normalize_targets():
    from coinagent.core.ledger import normalize_targets

    assert normalize_targets(["a", " b", "A", "  "], limit=2) == ["A", "B"]
