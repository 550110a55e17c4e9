from decimal import Decimal

from installments import calculate_installments


def test_first_six_installments_are_interest_free():
    options = calculate_installments(Decimal('300'))
    assert len(options) == 12
    for option in options[:6]:
        assert option.total == Decimal('300')
        assert option.per_installment == Decimal('300') / option.count
        assert not option.has_interest


def test_interest_compounds_over_excess_installments():
    options = calculate_installments(Decimal('100'))
    seventh = options[6]
    assert seventh.count == 7
    assert seventh.total == Decimal('100') * Decimal('1.0199')
    assert seventh.has_interest
    assert options[11].total.quantize(Decimal('0.01')) == Decimal('112.55')
    assert options[11].to_dict()['per_installment'] == f"{options[11].total / 12:.2f}"


def test_totals_grow_strictly_after_six_installments():
    amount = Decimal('257.30')
    options = calculate_installments(amount)
    assert all(a.total < b.total for a, b in zip(options[6:], options[7:]))
    assert all(o.total > amount for o in options[6:])
    for option in options[:6]:
        paid = (option.per_installment * option.count).quantize(Decimal('0.01'))
        assert paid == amount


def test_small_max_installments_never_charge_interest():
    options = calculate_installments(Decimal('90'), max_installments=3)
    assert [o.count for o in options] == [1, 2, 3]
    assert all(o.total == Decimal('90') for o in options)


def test_to_dict_formats_money():
    option = calculate_installments(Decimal('10'), max_installments=1)[0]
    assert option.to_dict() == {'count': 1, 'per_installment': '10.00', 'total': '10.00', 'has_interest': False}
